from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteIntakeDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front.

        Concurrent writers queue on the lock (up to the connection timeout)
        instead of failing on a SHARED -> RESERVED upgrade, so every
        conditional UPDATE inside sees the committed result of the previous one.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS patients (
                  id TEXT PRIMARY KEY,
                  provider_id TEXT NOT NULL,
                  first_name TEXT NOT NULL,
                  last_name TEXT NOT NULL,
                  date_of_birth TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS intake_links (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL REFERENCES patients(id),
                  token TEXT UNIQUE NOT NULL,
                  expires_at TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  used_at TEXT,
                  requires_verification INTEGER NOT NULL DEFAULT 1,
                  verification_attempts INTEGER NOT NULL DEFAULT 0,
                  locked_at TEXT,
                  verified_at TEXT,
                  superseded_at TEXT
                );

                CREATE TABLE IF NOT EXISTS intakes (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL REFERENCES patients(id),
                  intake_link_id TEXT UNIQUE NOT NULL REFERENCES intake_links(id),
                  responses_json TEXT NOT NULL,
                  consent_given INTEGER NOT NULL,
                  consent_timestamp TEXT,
                  completed_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS red_flags (
                  id TEXT PRIMARY KEY,
                  intake_id TEXT NOT NULL REFERENCES intakes(id),
                  flag TEXT NOT NULL,
                  severity TEXT NOT NULL,
                  category TEXT,
                  details TEXT,
                  recommendation TEXT,
                  source TEXT NOT NULL,
                  position INTEGER NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS summaries (
                  id TEXT PRIMARY KEY,
                  intake_id TEXT UNIQUE NOT NULL REFERENCES intakes(id),
                  chief_complaint TEXT NOT NULL,
                  medications_json TEXT NOT NULL,
                  systems_review_json TEXT NOT NULL,
                  relevant_history TEXT NOT NULL,
                  lifestyle_json TEXT NOT NULL,
                  red_flags_json TEXT NOT NULL,
                  content TEXT NOT NULL,
                  model TEXT NOT NULL,
                  tokens_used INTEGER,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS summary_edits (
                  id TEXT PRIMARY KEY,
                  summary_id TEXT NOT NULL REFERENCES summaries(id),
                  provider_id TEXT NOT NULL,
                  edits_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                  id TEXT PRIMARY KEY,
                  actor TEXT,
                  action TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT,
                  details_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_patients_provider
                  ON patients(provider_id);
                CREATE INDEX IF NOT EXISTS idx_intake_links_patient
                  ON intake_links(patient_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_red_flags_intake
                  ON red_flags(intake_id, position);
                CREATE INDEX IF NOT EXISTS idx_summary_edits_summary
                  ON summary_edits(summary_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_audit_events_entity
                  ON audit_events(entity_type, entity_id, created_at);
                """
            )
