from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from intake_core.models import DoctorEdits, Medication, RedFlag, Summary
from intake_core.time_utils import parse_iso, to_iso

from .database import SQLiteIntakeDB


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


_SUMMARY_COLUMNS = """
    s.id, s.intake_id, s.chief_complaint, s.medications_json, s.systems_review_json,
    s.relevant_history, s.lifestyle_json, s.red_flags_json, s.content, s.model,
    s.tokens_used, s.created_at
"""


def _summary_from_row(row: sqlite3.Row) -> Summary:
    return Summary(
        id=row["id"],
        intake_id=row["intake_id"],
        chief_complaint=row["chief_complaint"],
        medications=tuple(Medication.from_payload(item) for item in json.loads(row["medications_json"])),
        systems_review=json.loads(row["systems_review_json"]),
        relevant_history=row["relevant_history"],
        lifestyle=json.loads(row["lifestyle_json"]),
        red_flags=tuple(RedFlag.from_payload(item) for item in json.loads(row["red_flags_json"])),
        content=row["content"],
        model=row["model"],
        tokens_used=row["tokens_used"],
        created_at=parse_iso(row["created_at"]),
    )


class SummaryStore:
    """Summaries are written once; provider corrections live in summary_edits."""

    def __init__(self, db: SQLiteIntakeDB) -> None:
        self._db = db

    def insert(self, summary: Summary) -> tuple[Summary, bool]:
        """Persist a new summary. Returns (stored, created).

        If another writer already stored the summary for this intake, that row
        is returned with created=False.
        """
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO summaries (
                      id, intake_id, chief_complaint, medications_json, systems_review_json,
                      relevant_history, lifestyle_json, red_flags_json, content, model, tokens_used, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        summary.id,
                        summary.intake_id,
                        summary.chief_complaint,
                        _json_dumps([med.as_payload() for med in summary.medications]),
                        _json_dumps(summary.systems_review),
                        summary.relevant_history,
                        _json_dumps(summary.lifestyle),
                        _json_dumps([flag.as_payload() for flag in summary.red_flags]),
                        summary.content,
                        summary.model,
                        summary.tokens_used,
                        to_iso(summary.created_at),
                    ),
                )
        except sqlite3.IntegrityError:
            existing = self.get_by_intake(summary.intake_id)
            if not existing:
                raise
            return existing, False
        return summary, True

    def _load(self, where: str, params: tuple[Any, ...]) -> Summary | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SUMMARY_COLUMNS}
                FROM summaries s
                JOIN intakes i ON i.id = s.intake_id
                JOIN patients p ON p.id = i.patient_id
                WHERE {where}
                """,
                params,
            ).fetchone()
            if not row:
                return None
            summary = _summary_from_row(row)
            edit = conn.execute(
                """
                SELECT provider_id, edits_json, created_at
                FROM summary_edits
                WHERE summary_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (summary.id,),
            ).fetchone()
        if not edit:
            return summary
        return summary.with_overlay(
            DoctorEdits.from_payload(json.loads(edit["edits_json"])),
            edited_at=parse_iso(edit["created_at"]),
            edited_by=edit["provider_id"],
        )

    def get(self, summary_id: str) -> Summary | None:
        return self._load("s.id = ?", (summary_id,))

    def get_by_intake(self, intake_id: str) -> Summary | None:
        return self._load("s.intake_id = ?", (intake_id,))

    def get_for_provider(self, summary_id: str, provider_id: str) -> Summary | None:
        return self._load("s.id = ? AND p.provider_id = ?", (summary_id, provider_id))

    def count_for_intake(self, intake_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM summaries WHERE intake_id = ?",
                (intake_id,),
            ).fetchone()
            return int(row["count"])

    def append_edits(self, *, summary_id: str, provider_id: str, edits: DoctorEdits, now: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO summary_edits (id, summary_id, provider_id, edits_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, summary_id, provider_id, _json_dumps(edits.as_payload()), to_iso(now)),
            )

    def edit_history(self, summary_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT provider_id, edits_json, created_at
                FROM summary_edits
                WHERE summary_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (summary_id,),
            ).fetchall()
        return [
            {
                "provider_id": row["provider_id"],
                "edits": json.loads(row["edits_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
