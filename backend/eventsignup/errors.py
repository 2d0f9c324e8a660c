"""Error taxonomy for the registration and deletion core.

Errors are raised as exceptions and carry a stable ``code`` so callers can
localize them. ``api`` maps ``status_code`` onto HTTP responses.
"""

from typing import Any


class SignupError(Exception):
    code = "signup_error"
    message = "Operation failed."
    status_code = 400

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


# Validation errors


class InvalidPayload(SignupError):
    code = "invalid_payload"
    message = "Additional registration data must be a JSON object."
    status_code = 400


# State errors


class UserNotFound(SignupError):
    code = "user_not_found"
    message = "User not found."
    status_code = 404


class UserBlocked(SignupError):
    code = "user_blocked"
    message = "User account is blocked."
    status_code = 403


class EventNotActive(SignupError):
    code = "event_not_active"
    message = "Event is not open for registration."
    status_code = 409


class EventNotFound(EventNotActive):
    code = "event_not_found"
    message = "Event not found."
    status_code = 404


class DeadlineExpired(SignupError):
    code = "deadline_expired"
    message = "Registration deadline has passed."
    status_code = 409


class EventFull(SignupError):
    code = "event_full"
    message = "Event is full."
    status_code = 409


class AlreadyRegistered(SignupError):
    code = "already_registered"
    message = "User is already registered for this event."
    status_code = 409


class RegistrationNotFound(SignupError):
    code = "registration_not_found"
    message = "Active registration not found."
    status_code = 404


class RegistrationAlreadyCancelled(SignupError):
    code = "registration_already_cancelled"
    message = "Registration is already cancelled."
    status_code = 409


class CancellationTooLate(SignupError):
    code = "cancellation_too_late"
    message = "Registrations cannot be cancelled this close to the event."
    status_code = 409


class DeletionAlreadyScheduled(SignupError):
    code = "deletion_already_scheduled"
    message = "Account deletion is already scheduled."
    status_code = 409


# Infrastructure errors


class StoreUnavailable(SignupError):
    code = "store_unavailable"
    message = "Storage is temporarily unavailable. Try again later."
    status_code = 503


class RegistrationConflict(SignupError):
    code = "registration_conflict"
    message = "Registration collided with a concurrent request. Try again."
    status_code = 409
