from .audit_log import AuditLog
from .database import SQLiteIntakeDB
from .intake_store import IntakeStore
from .link_store import IntakeLinkStore
from .patient_store import PatientStore
from .summary_store import SummaryStore

__all__ = [
    "AuditLog",
    "IntakeLinkStore",
    "IntakeStore",
    "PatientStore",
    "SQLiteIntakeDB",
    "SummaryStore",
]
