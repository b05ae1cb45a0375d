from .errors import (
    AlreadyUsed,
    Expired,
    GenerationFailed,
    IntakeError,
    InvalidInput,
    Locked,
    NotFound,
    VerificationFailed,
)
from .gate import IntakeSubmissionGate
from .models import (
    LINK_STATES,
    MAX_VERIFICATION_ATTEMPTS,
    TERMINAL_LINK_STATES,
    DoctorEdits,
    Intake,
    IntakeLink,
    Medication,
    RedFlag,
    Summary,
    SubmissionResult,
    VerificationResult,
)
from .red_flags import RedFlagScanner
from .tokens import TokenIssuer, generate_token, token_fingerprint
from .verifier import LinkVerifier, status_of

__all__ = [
    "LINK_STATES",
    "MAX_VERIFICATION_ATTEMPTS",
    "TERMINAL_LINK_STATES",
    "AlreadyUsed",
    "DoctorEdits",
    "Expired",
    "GenerationFailed",
    "Intake",
    "IntakeError",
    "IntakeLink",
    "IntakeSubmissionGate",
    "InvalidInput",
    "LinkVerifier",
    "Locked",
    "Medication",
    "NotFound",
    "RedFlag",
    "RedFlagScanner",
    "SubmissionResult",
    "Summary",
    "TokenIssuer",
    "VerificationFailed",
    "VerificationResult",
    "generate_token",
    "status_of",
    "token_fingerprint",
]
