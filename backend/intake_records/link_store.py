from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from typing import Callable, TypeVar

from intake_core.models import IntakeLink
from intake_core.time_utils import parse_iso, to_iso

from .database import SQLiteIntakeDB

T = TypeVar("T")

_LINK_COLUMNS = """
    id, patient_id, token, expires_at, created_at, used_at, requires_verification,
    verification_attempts, locked_at, verified_at, superseded_at
"""


def _link_from_row(row: sqlite3.Row) -> IntakeLink:
    return IntakeLink(
        id=row["id"],
        patient_id=row["patient_id"],
        token=row["token"],
        expires_at=parse_iso(row["expires_at"]),
        created_at=parse_iso(row["created_at"]),
        used_at=parse_iso(row["used_at"]),
        requires_verification=bool(row["requires_verification"]),
        verification_attempts=int(row["verification_attempts"]),
        locked_at=parse_iso(row["locked_at"]),
        verified_at=parse_iso(row["verified_at"]),
        superseded_at=parse_iso(row["superseded_at"]),
    )


class IntakeLinkStore:
    """Row-level state transitions for intake links.

    Every mutation is a single conditional UPDATE inside an immediate
    transaction; callers never read-then-write the lifecycle columns.
    """

    def __init__(self, db: SQLiteIntakeDB) -> None:
        self._db = db

    def create_superseding(
        self,
        *,
        patient_id: str,
        token: str,
        expires_at: datetime,
        requires_verification: bool,
        now: datetime,
    ) -> tuple[IntakeLink, list[str]]:
        link_id = f"lnk_{uuid.uuid4().hex}"
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            superseded = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT id
                    FROM intake_links
                    WHERE patient_id = ?
                      AND used_at IS NULL
                      AND locked_at IS NULL
                      AND superseded_at IS NULL
                      AND expires_at > ?
                    """,
                    (patient_id, now_iso),
                ).fetchall()
            ]
            if superseded:
                conn.executemany(
                    "UPDATE intake_links SET superseded_at = ? WHERE id = ? AND superseded_at IS NULL",
                    [(now_iso, superseded_id) for superseded_id in superseded],
                )
            conn.execute(
                """
                INSERT INTO intake_links (
                  id, patient_id, token, expires_at, created_at, used_at, requires_verification,
                  verification_attempts, locked_at, verified_at, superseded_at
                )
                VALUES (?, ?, ?, ?, ?, NULL, ?, 0, NULL, NULL, NULL)
                """,
                (link_id, patient_id, token, to_iso(expires_at), now_iso, 1 if requires_verification else 0),
            )
        link = IntakeLink(
            id=link_id,
            patient_id=patient_id,
            token=token,
            expires_at=parse_iso(to_iso(expires_at)),
            created_at=parse_iso(now_iso),
            requires_verification=requires_verification,
        )
        return link, superseded

    def get_by_token(self, token: str) -> IntakeLink | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_LINK_COLUMNS} FROM intake_links WHERE token = ?",
                (token,),
            ).fetchone()
            return _link_from_row(row) if row else None

    def get(self, link_id: str) -> IntakeLink | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_LINK_COLUMNS} FROM intake_links WHERE id = ?",
                (link_id,),
            ).fetchone()
            return _link_from_row(row) if row else None

    def links_for_patient(self, patient_id: str) -> list[IntakeLink]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_LINK_COLUMNS}
                FROM intake_links
                WHERE patient_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (patient_id,),
            ).fetchall()
            return [_link_from_row(row) for row in rows]

    def record_failed_attempt(self, *, link_id: str, now: datetime, max_attempts: int) -> IntakeLink | None:
        """Count one wrong secret; lock once the counter reaches max_attempts.

        Returns None when the link was no longer open for verification.
        """
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE intake_links
                SET verification_attempts = verification_attempts + 1,
                    locked_at = CASE WHEN verification_attempts + 1 >= ? THEN ? ELSE locked_at END
                WHERE id = ?
                  AND used_at IS NULL
                  AND locked_at IS NULL
                  AND superseded_at IS NULL
                  AND expires_at > ?
                """,
                (max_attempts, now_iso, link_id, now_iso),
            ).rowcount
            if updated != 1:
                return None
            row = conn.execute(
                f"SELECT {_LINK_COLUMNS} FROM intake_links WHERE id = ?",
                (link_id,),
            ).fetchone()
            return _link_from_row(row)

    def mark_verified(self, *, link_id: str, now: datetime) -> bool:
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            return (
                conn.execute(
                    """
                    UPDATE intake_links
                    SET verified_at = ?
                    WHERE id = ?
                      AND used_at IS NULL
                      AND locked_at IS NULL
                      AND superseded_at IS NULL
                      AND expires_at > ?
                    """,
                    (now_iso, link_id, now_iso),
                ).rowcount
                == 1
            )

    def consume(
        self,
        *,
        link_id: str,
        now: datetime,
        on_consumed: Callable[[sqlite3.Connection], T],
    ) -> T | None:
        """Set used_at exactly once and run on_consumed in the same transaction.

        Returns None, with nothing written, if another request consumed the link
        first or it stopped being active in the meantime.
        """
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            claimed = conn.execute(
                """
                UPDATE intake_links
                SET used_at = ?
                WHERE id = ?
                  AND used_at IS NULL
                  AND locked_at IS NULL
                  AND superseded_at IS NULL
                  AND expires_at > ?
                """,
                (now_iso, link_id, now_iso),
            ).rowcount
            if claimed != 1:
                return None
            return on_consumed(conn)
