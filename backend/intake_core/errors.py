from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base for every error that maps to a user-facing reason code."""

    code = "ERROR"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def as_payload(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, **self.extra}}


class NotFound(IntakeError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Intake link not found."


class Expired(IntakeError):
    code = "LINK_EXPIRED"
    status_code = 410
    default_message = "This intake link has expired."


class AlreadyUsed(IntakeError):
    code = "ALREADY_COMPLETED"
    status_code = 410
    default_message = "This intake has already been submitted."


class Locked(IntakeError):
    code = "LINK_LOCKED"
    status_code = 410
    default_message = "This intake link is locked after too many verification attempts."


class VerificationFailed(IntakeError):
    code = "VERIFICATION_REQUIRED"
    status_code = 400
    default_message = "Identity verification is required before submitting."

    def __init__(self, message: str | None = None, *, attempts_remaining: int) -> None:
        self.attempts_remaining = attempts_remaining
        super().__init__(message, attemptsRemaining=attempts_remaining)


class InvalidInput(IntakeError):
    code = "INVALID_INPUT"
    status_code = 400
    default_message = "Invalid input."


class GenerationFailed(IntakeError):
    code = "GENERATION_FAILED"
    status_code = 502
    default_message = "Failed to generate AI summary."
