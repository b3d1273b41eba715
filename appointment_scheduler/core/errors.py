"""
Error taxonomy for the scheduling core.

Every error carries a message that is safe to show to the user. Store errors
keep the underlying cause on ``__cause__`` for logging only.
"""
from typing import Optional


class SchedulerError(Exception):
    """Base class for errors surfaced by the scheduling services."""

    message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(SchedulerError):
    """A required field is missing or an attachment breaks its limits."""

    message = "All fields are required."


class ReadError(SchedulerError):
    """The store could not be read."""

    message = "Failed to load appointments. Please try again."


class WriteError(SchedulerError):
    """The store rejected or could not complete a write."""

    message = "Failed to update the appointment. Please try again."


class UploadError(SchedulerError):
    """The attachment could not be written to the object store."""

    message = "Failed to upload the audio message. Please try again."


class AuthorizationError(SchedulerError):
    """The caller's role, the status or the time does not permit the action."""

    message = "This action is not allowed for this appointment."


class AppointmentNotFoundError(SchedulerError):
    message = "Appointment not found."


class ActionInProgressError(SchedulerError):
    """Another action on the same appointment has not resolved yet."""

    message = "An action on this appointment is already in progress."


class NotAuthenticatedError(SchedulerError):
    message = "You must be logged in."
