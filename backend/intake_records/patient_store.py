from __future__ import annotations

import uuid
from typing import Any

from intake_core.time_utils import to_iso, utc_now

from .database import SQLiteIntakeDB


class PatientStore:
    """Minimal patient lookup used by link issuance and verification."""

    def __init__(self, db: SQLiteIntakeDB) -> None:
        self._db = db

    def register(
        self,
        *,
        provider_id: str,
        first_name: str,
        last_name: str,
        date_of_birth: str | None,
    ) -> dict[str, Any]:
        patient_id = f"pat_{uuid.uuid4().hex}"
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO patients (id, provider_id, first_name, last_name, date_of_birth, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (patient_id, provider_id, first_name.strip(), last_name.strip(), date_of_birth, now),
            )
        return {
            "id": patient_id,
            "provider_id": provider_id,
            "first_name": first_name.strip(),
            "last_name": last_name.strip(),
            "date_of_birth": date_of_birth,
            "created_at": now,
        }

    def get(self, patient_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, provider_id, first_name, last_name, date_of_birth, created_at
                FROM patients
                WHERE id = ?
                """,
                (patient_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_for_provider(self, patient_id: str, provider_id: str) -> dict[str, Any] | None:
        patient = self.get(patient_id)
        if not patient or patient["provider_id"] != provider_id:
            return None
        return patient
