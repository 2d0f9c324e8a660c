import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    func,
    Boolean,
    JSON,
    false,
)
from sqlalchemy.orm import relationship
from .database import Base


class EventStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    cancelled = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    # Set while a deferred deletion is pending
    is_blocked = Column(Boolean, server_default=false(), nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    registrations = relationship("Registration", back_populates="user")
    pending_deletion = relationship("PendingDeletion", back_populates="user", uselist=False)


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    # NULL means unlimited
    capacity = Column(Integer, nullable=True)
    registration_deadline = Column(TIMESTAMP(timezone=True), nullable=False)
    start_time = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    status = Column(Enum(EventStatus), nullable=False, default=EventStatus.draft, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    registrations = relationship("Registration", back_populates="event")


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_registration_user_event"),
        Index("ix_registrations_event_cancelled", "event_id", "cancelled_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    additional_data = Column(JSON, nullable=True)
    registered_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    user = relationship("User", back_populates="registrations")
    event = relationship("Event", back_populates="registrations")


class PendingDeletion(Base):
    __tablename__ = "pending_deletions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    deletion_date = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="pending_deletion")


class DeletedUserArchive(Base):
    __tablename__ = "deleted_users_archive"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    registered_at = Column(TIMESTAMP(timezone=True), nullable=False)
    deleted_at = Column(TIMESTAMP(timezone=True), nullable=False)
    events_participated = Column(JSON, nullable=True)


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True)
    # Nulled when the user is destroyed; the row itself is kept
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    action_type = Column(String(64), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    timestamp = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
