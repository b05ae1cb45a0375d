from __future__ import annotations

import hashlib
import secrets
import sqlite3
from datetime import timedelta
from typing import TYPE_CHECKING

from logging_config import get_logger

from .errors import InvalidInput, NotFound
from .models import IntakeLink
from .time_utils import utc_now

if TYPE_CHECKING:
    from intake_records import AuditLog, IntakeLinkStore, PatientStore

logger = get_logger(__name__)

TOKEN_BYTES = 32
DEFAULT_LINK_TTL_SECONDS = 7 * 24 * 3600
MAX_LINK_TTL_SECONDS = 365 * 24 * 3600


def generate_token() -> str:
    """64 lowercase hex characters from the OS CSPRNG (256 bits)."""
    return secrets.token_hex(TOKEN_BYTES)


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class TokenIssuer:
    _MAX_TOKEN_COLLISIONS = 3

    def __init__(
        self,
        *,
        links: "IntakeLinkStore",
        patients: "PatientStore",
        audit: "AuditLog",
        public_base_url: str,
        default_ttl_seconds: int = DEFAULT_LINK_TTL_SECONDS,
    ) -> None:
        self.links = links
        self.patients = patients
        self.audit = audit
        self.public_base_url = public_base_url.rstrip("/")
        self.default_ttl_seconds = default_ttl_seconds

    def link_url(self, token: str) -> str:
        return f"{self.public_base_url}/intake/{token}"

    def issue_link(
        self,
        *,
        provider_id: str,
        patient_id: str,
        ttl_seconds: int | None = None,
        requires_verification: bool = True,
    ) -> IntakeLink:
        ttl = self.default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        if ttl < 0:
            raise InvalidInput("ttl must not be negative.")
        if ttl > MAX_LINK_TTL_SECONDS:
            raise InvalidInput(f"ttl must not exceed {MAX_LINK_TTL_SECONDS} seconds.")
        patient = self.patients.get_for_provider(patient_id, provider_id)
        if not patient:
            raise NotFound("Patient not found.")
        if requires_verification and not patient.get("date_of_birth"):
            raise InvalidInput("Patient has no date of birth on file; verification cannot be required.")

        now = utc_now()
        expires_at = now + timedelta(seconds=ttl)
        for attempt in range(self._MAX_TOKEN_COLLISIONS):
            token = generate_token()
            try:
                link, superseded = self.links.create_superseding(
                    patient_id=patient_id,
                    token=token,
                    expires_at=expires_at,
                    requires_verification=requires_verification,
                    now=now,
                )
                break
            except sqlite3.IntegrityError:
                logger.warning("Intake link token collision", attempt=attempt + 1)
        else:
            raise RuntimeError("Could not allocate a unique intake link token.")

        for superseded_id in superseded:
            self.audit.record(
                actor=provider_id,
                action="LINK_SUPERSEDED",
                entity_type="intake_link",
                entity_id=superseded_id,
                details={"superseded_by": link.id},
            )
        self.audit.record(
            actor=provider_id,
            action="LINK_CREATED",
            entity_type="intake_link",
            entity_id=link.id,
            details={
                "patient_id": patient_id,
                "token_fp": token_fingerprint(link.token),
                "ttl_seconds": ttl,
                "requires_verification": requires_verification,
            },
        )
        logger.info(
            "Intake link issued",
            link_id=link.id,
            patient_id=patient_id,
            token_fp=token_fingerprint(link.token),
            superseded=len(superseded),
        )
        return link
