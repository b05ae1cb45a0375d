from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .time_utils import to_iso


LINK_ACTIVE = "active"
LINK_USED = "used"
LINK_EXPIRED = "expired"
LINK_LOCKED = "locked"
LINK_STATES = {LINK_ACTIVE, LINK_USED, LINK_EXPIRED, LINK_LOCKED}
TERMINAL_LINK_STATES = {LINK_USED, LINK_EXPIRED, LINK_LOCKED}

MAX_VERIFICATION_ATTEMPTS = 3

SEVERITIES = ("high", "medium", "low")
SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITIES)}
RED_FLAG_SOURCES = {"keyword", "ai", "manual"}


def _iso_or_none(value: datetime | None) -> str | None:
    return to_iso(value) if value else None


@dataclass
class IntakeLink:
    id: str
    patient_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    used_at: datetime | None = None
    requires_verification: bool = True
    verification_attempts: int = 0
    locked_at: datetime | None = None
    verified_at: datetime | None = None
    superseded_at: datetime | None = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, MAX_VERIFICATION_ATTEMPTS - self.verification_attempts)


@dataclass(frozen=True)
class PatientDisplayInfo:
    first_name: str
    last_initial: str

    def as_payload(self) -> dict[str, Any]:
        return {"firstName": self.first_name, "lastInitial": self.last_initial}


@dataclass(frozen=True)
class VerificationResult:
    accepted: bool
    attempts_remaining: int
    locked: bool

    def as_payload(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "attemptsRemaining": self.attempts_remaining,
            "locked": self.locked,
        }


@dataclass
class Intake:
    id: str
    patient_id: str
    intake_link_id: str
    responses: dict[str, Any]
    consent_given: bool
    consent_timestamp: datetime | None
    completed_at: datetime

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "intakeLinkId": self.intake_link_id,
            "responses": self.responses,
            "consentGiven": self.consent_given,
            "consentTimestamp": _iso_or_none(self.consent_timestamp),
            "completedAt": to_iso(self.completed_at),
        }


@dataclass(frozen=True)
class RedFlag:
    flag: str
    severity: str
    source: str
    category: str | None = None
    details: str | None = None
    recommendation: str | None = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.flag, self.severity)

    @property
    def id(self) -> str:
        return f"{self.flag}-{self.severity}"

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flag": self.flag,
            "severity": self.severity,
            "category": self.category,
            "details": self.details,
            "recommendation": self.recommendation,
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RedFlag":
        return cls(
            flag=str(payload["flag"]),
            severity=str(payload["severity"]),
            source=str(payload["source"]),
            category=payload.get("category"),
            details=payload.get("details"),
            recommendation=payload.get("recommendation"),
        )


@dataclass(frozen=True)
class Medication:
    name: str
    dosage: str | None = None
    frequency: str | None = None
    purpose: str | None = None
    is_verified: bool = True

    def as_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "dosage": self.dosage,
            "frequency": self.frequency,
            "purpose": self.purpose,
            "isVerified": self.is_verified,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Medication":
        return cls(
            name=str(payload["name"]),
            dosage=payload.get("dosage"),
            frequency=payload.get("frequency"),
            purpose=payload.get("purpose"),
            is_verified=bool(payload.get("isVerified", True)),
        )


@dataclass(frozen=True)
class DoctorEdits:
    chief_complaint: str | None = None
    relevant_history: str | None = None
    additional_notes: str | None = None
    dismissed_red_flags: tuple[str, ...] = ()
    added_red_flags: tuple[RedFlag, ...] = ()

    def as_payload(self) -> dict[str, Any]:
        return {
            "chiefComplaint": self.chief_complaint,
            "relevantHistory": self.relevant_history,
            "additionalNotes": self.additional_notes,
            "dismissedRedFlags": list(self.dismissed_red_flags),
            "addedRedFlags": [flag.as_payload() for flag in self.added_red_flags],
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DoctorEdits":
        return cls(
            chief_complaint=payload.get("chiefComplaint"),
            relevant_history=payload.get("relevantHistory"),
            additional_notes=payload.get("additionalNotes"),
            dismissed_red_flags=tuple(payload.get("dismissedRedFlags") or ()),
            added_red_flags=tuple(RedFlag.from_payload(item) for item in payload.get("addedRedFlags") or ()),
        )


@dataclass(frozen=True)
class Summary:
    id: str
    intake_id: str
    chief_complaint: str
    medications: tuple[Medication, ...]
    systems_review: dict[str, str | None]
    relevant_history: str
    lifestyle: dict[str, str | None]
    red_flags: tuple[RedFlag, ...]
    content: str
    model: str
    tokens_used: int | None
    created_at: datetime
    doctor_edits: DoctorEdits | None = None
    edited_at: datetime | None = None
    edited_by: str | None = None

    @property
    def has_red_flags(self) -> bool:
        return len(self.red_flags) > 0

    @property
    def red_flag_count(self) -> int:
        return len(self.red_flags)

    def with_overlay(
        self,
        edits: DoctorEdits | None,
        *,
        edited_at: datetime | None,
        edited_by: str | None,
    ) -> "Summary":
        return replace(self, doctor_edits=edits, edited_at=edited_at, edited_by=edited_by)

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "intakeId": self.intake_id,
            "chiefComplaint": self.chief_complaint,
            "medications": [med.as_payload() for med in self.medications],
            "systemsReview": dict(self.systems_review),
            "relevantHistory": self.relevant_history,
            "lifestyle": dict(self.lifestyle),
            "redFlags": [flag.as_payload() for flag in self.red_flags],
            "hasRedFlags": self.has_red_flags,
            "redFlagCount": self.red_flag_count,
            "content": self.content,
            "model": self.model,
            "tokensUsed": self.tokens_used,
            "doctorEdits": self.doctor_edits.as_payload() if self.doctor_edits else None,
            "editedAt": _iso_or_none(self.edited_at),
            "editedByUserId": self.edited_by,
            "createdAt": to_iso(self.created_at),
        }


@dataclass
class SubmissionResult:
    intake: Intake
    red_flags: list[RedFlag] = field(default_factory=list)
