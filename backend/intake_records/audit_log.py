from __future__ import annotations

import json
import uuid
from typing import Any

from intake_core.time_utils import to_iso, utc_now

from .database import SQLiteIntakeDB


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class AuditLog:
    def __init__(self, db: SQLiteIntakeDB) -> None:
        self._db = db

    def record(
        self,
        *,
        actor: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_events (id, actor, action, entity_type, entity_id, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    actor,
                    action,
                    entity_type,
                    entity_id,
                    _json_dumps(details or {}),
                    to_iso(utc_now()),
                ),
            )

    def events_for(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT actor, action, entity_type, entity_id, details_json, created_at
                FROM audit_events
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (entity_type, entity_id),
            ).fetchall()
        return [
            {
                "actor": row["actor"],
                "action": row["action"],
                "entity_type": row["entity_type"],
                "entity_id": row["entity_id"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
