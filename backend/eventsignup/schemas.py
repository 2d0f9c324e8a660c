from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from .models import EventStatus


class TokenData(BaseModel):
    user_id: int
    email: Optional[str] = None


class EventResponse(BaseModel):
    id: int
    title: str
    capacity: Optional[int] = None
    registration_deadline: datetime
    start_time: datetime
    status: EventStatus
    seats_taken: int = 0
    seats_left: Optional[int] = None
    is_open: bool = False


class RegistrationCreate(BaseModel):
    additional_data: Optional[dict[str, Any]] = None


class RegistrationCancel(BaseModel):
    cancellation_reason: Optional[str] = Field(default=None, min_length=5, max_length=500)

    @field_validator("cancellation_reason", mode="before")
    @classmethod
    def strip_reason(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class RegistrationResponse(BaseModel):
    id: int
    user_id: int
    event_id: int
    additional_data: Optional[dict[str, Any]] = None
    registered_at: datetime
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RegistrationWithEventResponse(RegistrationResponse):
    event_title: str
    event_start_time: datetime
    event_status: EventStatus


class RegisterResponse(BaseModel):
    registration: RegistrationResponse
    reactivated: bool


class AccountDeleteRequest(BaseModel):
    password: str


class AccountDeleteResponse(BaseModel):
    deleted: bool
    immediate: bool
    delete_date: Optional[datetime] = None


class ScheduledDeletionResponse(BaseModel):
    id: int
    user_id: int
    deletion_date: datetime
    created_at: Optional[datetime] = None
    user_email: EmailStr
    user_first_name: str
    user_last_name: str
    last_event_start: Optional[datetime] = None


class ScheduledDeletionListResponse(BaseModel):
    items: List[ScheduledDeletionResponse]
    total: int


class AdminRegistrationCancel(BaseModel):
    reason: str = Field(min_length=5, max_length=500)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, value):
        return value.strip() if isinstance(value, str) else value


class RegistrationUser(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: EmailStr


class EventRegistrationResponse(RegistrationResponse):
    user: RegistrationUser


class EventRegistrationListResponse(BaseModel):
    items: List[EventRegistrationResponse]
    total: int


class SweepResponse(BaseModel):
    success: bool = True
    deleted: int
    timestamp: datetime
