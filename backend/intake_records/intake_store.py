from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from intake_core.models import Intake, RedFlag
from intake_core.time_utils import parse_iso, to_iso

from .database import SQLiteIntakeDB


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _intake_from_row(row: sqlite3.Row) -> Intake:
    return Intake(
        id=row["id"],
        patient_id=row["patient_id"],
        intake_link_id=row["intake_link_id"],
        responses=json.loads(row["responses_json"]),
        consent_given=bool(row["consent_given"]),
        consent_timestamp=parse_iso(row["consent_timestamp"]),
        completed_at=parse_iso(row["completed_at"]),
    )


class IntakeStore:
    def __init__(self, db: SQLiteIntakeDB) -> None:
        self._db = db

    @staticmethod
    def insert(
        conn: sqlite3.Connection,
        *,
        patient_id: str,
        intake_link_id: str,
        responses: dict[str, Any],
        consent_given: bool,
        red_flags: list[RedFlag],
        now: datetime,
    ) -> Intake:
        """Insert an intake and its keyword red flags on the caller's transaction."""
        intake_id = f"int_{uuid.uuid4().hex}"
        now_iso = to_iso(now)
        conn.execute(
            """
            INSERT INTO intakes (
              id, patient_id, intake_link_id, responses_json, consent_given, consent_timestamp, completed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                intake_id,
                patient_id,
                intake_link_id,
                _json_dumps(responses),
                1 if consent_given else 0,
                now_iso if consent_given else None,
                now_iso,
            ),
        )
        conn.executemany(
            """
            INSERT INTO red_flags (
              id, intake_id, flag, severity, category, details, recommendation, source, position, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    uuid.uuid4().hex,
                    intake_id,
                    flag.flag,
                    flag.severity,
                    flag.category,
                    flag.details,
                    flag.recommendation,
                    flag.source,
                    position,
                    now_iso,
                )
                for position, flag in enumerate(red_flags)
            ],
        )
        return Intake(
            id=intake_id,
            patient_id=patient_id,
            intake_link_id=intake_link_id,
            responses=responses,
            consent_given=consent_given,
            consent_timestamp=parse_iso(now_iso) if consent_given else None,
            completed_at=parse_iso(now_iso),
        )

    def get(self, intake_id: str) -> Intake | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, patient_id, intake_link_id, responses_json, consent_given, consent_timestamp, completed_at
                FROM intakes
                WHERE id = ?
                """,
                (intake_id,),
            ).fetchone()
            return _intake_from_row(row) if row else None

    def get_for_provider(self, intake_id: str, provider_id: str) -> Intake | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT i.id, i.patient_id, i.intake_link_id, i.responses_json, i.consent_given,
                       i.consent_timestamp, i.completed_at
                FROM intakes i
                JOIN patients p ON p.id = i.patient_id
                WHERE i.id = ? AND p.provider_id = ?
                """,
                (intake_id, provider_id),
            ).fetchone()
            return _intake_from_row(row) if row else None

    def count_for_link(self, intake_link_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM intakes WHERE intake_link_id = ?",
                (intake_link_id,),
            ).fetchone()
            return int(row["count"])

    def red_flags_for(self, intake_id: str) -> list[RedFlag]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT flag, severity, category, details, recommendation, source
                FROM red_flags
                WHERE intake_id = ?
                ORDER BY position ASC
                """,
                (intake_id,),
            ).fetchall()
        return [
            RedFlag(
                flag=row["flag"],
                severity=row["severity"],
                source=row["source"],
                category=row["category"],
                details=row["details"],
                recommendation=row["recommendation"],
            )
            for row in rows
        ]
