from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from logging_config import get_logger

from .errors import AlreadyUsed, Expired, InvalidInput, Locked, NotFound
from .models import (
    LINK_ACTIVE,
    LINK_EXPIRED,
    LINK_LOCKED,
    LINK_USED,
    MAX_VERIFICATION_ATTEMPTS,
    IntakeLink,
    PatientDisplayInfo,
    VerificationResult,
)
from .time_utils import utc_now
from .tokens import token_fingerprint

if TYPE_CHECKING:
    from intake_records import AuditLog, IntakeLinkStore, PatientStore

logger = get_logger(__name__)

_DOB_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d", "%m-%d-%Y")


def status_of(link: IntakeLink, now: datetime) -> str:
    if link.used_at is not None:
        return LINK_USED
    if now >= link.expires_at or link.superseded_at is not None:
        return LINK_EXPIRED
    if link.locked_at is not None:
        return LINK_LOCKED
    return LINK_ACTIVE


def raise_for_status(status: str) -> None:
    if status == LINK_USED:
        raise AlreadyUsed()
    if status == LINK_EXPIRED:
        raise Expired()
    if status == LINK_LOCKED:
        raise Locked()


def normalize_date_of_birth(value: str) -> str:
    text = value.strip()
    for fmt in _DOB_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return text


class LinkVerifier:
    def __init__(
        self,
        *,
        links: "IntakeLinkStore",
        patients: "PatientStore",
        audit: "AuditLog",
        verification_max_age_seconds: int = 0,
    ) -> None:
        self.links = links
        self.patients = patients
        self.audit = audit
        self.verification_max_age_seconds = verification_max_age_seconds

    def lookup(self, token: str) -> IntakeLink:
        link = self.links.get_by_token(token) if token else None
        if link is None:
            logger.info("Intake link lookup miss", token_fp=token_fingerprint(token or ""))
            raise NotFound()
        return link

    def describe(self, token: str) -> tuple[IntakeLink, PatientDisplayInfo]:
        link = self.lookup(token)
        raise_for_status(status_of(link, utc_now()))
        patient = self.patients.get(link.patient_id) or {}
        first_name = str(patient.get("first_name") or "")
        last_name = str(patient.get("last_name") or "")
        return link, PatientDisplayInfo(first_name=first_name, last_initial=last_name[:1])

    def is_verification_satisfied(self, link: IntakeLink, now: datetime) -> bool:
        if not link.requires_verification:
            return True
        if link.verified_at is None:
            return False
        if self.verification_max_age_seconds > 0:
            return now - link.verified_at <= timedelta(seconds=self.verification_max_age_seconds)
        return True

    def verify(self, token: str, shared_secret: str) -> VerificationResult:
        link = self.lookup(token)
        now = utc_now()
        raise_for_status(status_of(link, now))
        if not link.requires_verification:
            return VerificationResult(accepted=True, attempts_remaining=link.attempts_remaining, locked=False)
        if not shared_secret or not shared_secret.strip():
            raise InvalidInput("A date of birth is required.")

        patient = self.patients.get(link.patient_id) or {}
        expected = normalize_date_of_birth(str(patient.get("date_of_birth") or ""))
        supplied = normalize_date_of_birth(shared_secret)
        token_fp = token_fingerprint(token)

        if expected and hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
            if not self.links.mark_verified(link_id=link.id, now=now):
                current = self.links.get(link.id) or link
                raise_for_status(status_of(current, utc_now()))
            self.audit.record(
                actor=None,
                action="LINK_VERIFIED",
                entity_type="intake_link",
                entity_id=link.id,
                details={"token_fp": token_fp},
            )
            logger.info("Intake link verified", link_id=link.id, token_fp=token_fp)
            return VerificationResult(accepted=True, attempts_remaining=link.attempts_remaining, locked=False)

        updated = self.links.record_failed_attempt(
            link_id=link.id,
            now=now,
            max_attempts=MAX_VERIFICATION_ATTEMPTS,
        )
        if updated is None:
            # Another request closed the link between the read and the update.
            current = self.links.get(link.id) or link
            raise_for_status(status_of(current, utc_now()))
            raise Locked()

        locked = updated.locked_at is not None
        self.audit.record(
            actor=None,
            action="LINK_LOCKED" if locked else "VERIFICATION_FAILED",
            entity_type="intake_link",
            entity_id=link.id,
            details={"token_fp": token_fp, "attempts": updated.verification_attempts},
        )
        logger.warning(
            "Intake link verification failed",
            link_id=link.id,
            token_fp=token_fp,
            attempts=updated.verification_attempts,
            locked=locked,
        )
        return VerificationResult(
            accepted=False,
            attempts_remaining=updated.attempts_remaining,
            locked=locked,
        )
