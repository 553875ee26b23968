# Folder: ci-triage/storage/fingerprint_store.py
#
# SQLite table mapping failure fingerprints to the issue that tracks them.
# The only durable state the triage pipeline owns.
#
# Insert is insert-or-fetch on the primary key, so two workers (or two
# processes sharing the file) that race on the same fingerprint both
# walk away with the same winning row.

import logging
import os
import sqlite3
import threading
import time
from typing import Optional, Tuple

from ingestion.event_schema import FingerprintRecord

logger = logging.getLogger(__name__)

_COLUMNS = "fingerprint, project_id, issue_ref, first_seen, last_seen, occurrences"


class FingerprintStore:
    """
    fingerprint → issue mapping.
    Rows are created on first sighting, bumped on repeats, never deleted.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(directory, exist_ok=True)
        self.db_path = db_path
        # timeout: wait on other processes' write locks instead of failing
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        # One connection shared by threads; sqlite3 objects are not re-entrant
        self._lock = threading.Lock()
        self._create_tables()
        logger.info(f"FingerprintStore initialized at {db_path}")

    def _create_tables(self):
        with self._lock:
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS fingerprints (
                    fingerprint  TEXT PRIMARY KEY,
                    project_id   TEXT NOT NULL,
                    issue_ref    INTEGER NOT NULL,
                    first_seen   INTEGER NOT NULL,   -- unix seconds
                    last_seen    INTEGER NOT NULL,
                    occurrences  INTEGER NOT NULL DEFAULT 1
                )
            """)
            self.conn.commit()

    def _select(self, fingerprint: str) -> Optional[FingerprintRecord]:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM fingerprints WHERE fingerprint = ?",
            [fingerprint],
        ).fetchone()
        return FingerprintRecord(**dict(row)) if row else None

    def get(self, fingerprint: str) -> Optional[FingerprintRecord]:
        with self._lock:
            return self._select(fingerprint)

    def insert_atomic(self, fingerprint: str, project_id: str,
                      issue_ref: int) -> Tuple[FingerprintRecord, bool]:
        """
        Insert the mapping unless the fingerprint already exists.
        Returns (row now in the table, whether we inserted it).
        The unique constraint decides the winner, not this process.
        """
        now = int(time.time())
        with self._lock:
            cursor = self.conn.execute("""
                INSERT INTO fingerprints
                    (fingerprint, project_id, issue_ref, first_seen, last_seen, occurrences)
                VALUES (?, ?, ?, ?, ?, 1)
                ON CONFLICT(fingerprint) DO NOTHING
            """, [fingerprint, str(project_id), int(issue_ref), now, now])
            self.conn.commit()
            inserted = cursor.rowcount == 1
            record = self._select(fingerprint)

        if not inserted:
            logger.info(
                f"Fingerprint {fingerprint} already mapped to #{record.issue_ref}"
            )
        return record, inserted

    def bump_occurrence(self, fingerprint: str) -> Optional[FingerprintRecord]:
        """Count one more sighting; returns the updated row"""
        with self._lock:
            self.conn.execute("""
                UPDATE fingerprints SET
                    occurrences = occurrences + 1,
                    last_seen   = ?
                WHERE fingerprint = ?
            """, [int(time.time()), fingerprint])
            self.conn.commit()
            return self._select(fingerprint)

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM fingerprints").fetchone()[0]

    def close(self):
        with self._lock:
            self.conn.close()
