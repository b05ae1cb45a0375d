from __future__ import annotations

from typing import TYPE_CHECKING, Any

from logging_config import get_logger

from .errors import AlreadyUsed, Expired, InvalidInput, Locked, VerificationFailed
from .models import LINK_ACTIVE, LINK_EXPIRED, LINK_LOCKED, LINK_USED, SubmissionResult
from .red_flags import RedFlagScanner
from .responses import validate_responses
from .time_utils import utc_now
from .tokens import token_fingerprint
from .verifier import LinkVerifier, status_of

if TYPE_CHECKING:
    from intake_records import AuditLog, IntakeLinkStore, IntakeStore

logger = get_logger(__name__)


class IntakeSubmissionGate:
    """Single-use consumption of an intake link.

    Preconditions are checked in a fixed order, each with its own error:
    exists, not expired, not locked, not used, verified (when required),
    consent given. The final claim of the link is a compare-and-swap on
    used_at that commits together with the intake row.
    """

    def __init__(
        self,
        *,
        links: "IntakeLinkStore",
        intakes: "IntakeStore",
        verifier: LinkVerifier,
        scanner: RedFlagScanner,
        audit: "AuditLog",
    ) -> None:
        self.links = links
        self.intakes = intakes
        self.verifier = verifier
        self.scanner = scanner
        self.audit = audit

    @staticmethod
    def _check_lifecycle(status: str) -> None:
        if status == LINK_EXPIRED:
            raise Expired()
        if status == LINK_LOCKED:
            raise Locked()
        if status == LINK_USED:
            raise AlreadyUsed()

    def _status_for_submission(self, link, now) -> str:
        # Expiry is reported ahead of use, so a stale link that was also
        # consumed still answers LINK_EXPIRED on submit.
        if now >= link.expires_at or link.superseded_at is not None:
            return LINK_EXPIRED
        if link.locked_at is not None:
            return LINK_LOCKED
        if link.used_at is not None:
            return LINK_USED
        return LINK_ACTIVE

    def submit(self, token: str, responses: Any, consent: bool) -> SubmissionResult:
        link = self.verifier.lookup(token)
        now = utc_now()
        self._check_lifecycle(self._status_for_submission(link, now))
        if not self.verifier.is_verification_satisfied(link, now):
            raise VerificationFailed(attempts_remaining=link.attempts_remaining)
        if consent is not True:
            raise InvalidInput("Consent is required to submit the intake form.")
        checked = validate_responses(responses)

        red_flags = self.scanner.scan(checked)
        intake = self.links.consume(
            link_id=link.id,
            now=now,
            on_consumed=lambda conn: self.intakes.insert(
                conn,
                patient_id=link.patient_id,
                intake_link_id=link.id,
                responses=checked,
                consent_given=True,
                red_flags=red_flags,
                now=now,
            ),
        )
        token_fp = token_fingerprint(token)
        if intake is None:
            current = self.links.get(link.id) or link
            status = status_of(current, utc_now())
            logger.info("Intake submission lost the claim", link_id=link.id, token_fp=token_fp, status=status)
            self._check_lifecycle(status if status != LINK_ACTIVE else LINK_USED)

        self.audit.record(
            actor=None,
            action="INTAKE_SUBMITTED",
            entity_type="intake",
            entity_id=intake.id,
            details={
                "intake_link_id": link.id,
                "token_fp": token_fp,
                "red_flag_count": len(red_flags),
            },
        )
        logger.info(
            "Intake submitted",
            intake_id=intake.id,
            patient_id=link.patient_id,
            token_fp=token_fp,
            red_flag_count=len(red_flags),
        )
        return SubmissionResult(intake=intake, red_flags=red_flags)
