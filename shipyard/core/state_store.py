"""Key-value record store backed by SQLite.

Targets, artifacts and rollout plans are persisted as JSON documents keyed
by (namespace, key) so they survive a controller restart.  The store knows
nothing about the models it holds; typed access lives in the registry,
catalog and plan repository.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_RECORDS = """
CREATE TABLE IF NOT EXISTS records (
    namespace   TEXT NOT NULL,
    key         TEXT NOT NULL,
    body_json   TEXT NOT NULL,
    seq         INTEGER NOT NULL,
    updated_utc TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);
"""

_CREATE_IDX_NAMESPACE = """
CREATE INDEX IF NOT EXISTS idx_records_ns ON records(namespace, seq);
"""


class StateStore:
    """Durable namespace/key → JSON document store.

    ``seq`` preserves first-insertion order within a namespace, which the
    target registry relies on for its default rollout order.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_RECORDS)
            conn.execute(_CREATE_IDX_NAMESPACE)
            conn.commit()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, namespace: str, key: str, body: dict[str, Any]) -> None:
        """Insert or replace a record, keeping its original sequence number."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT seq FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
            if row is None:
                (seq,) = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM records WHERE namespace = ?",
                    (namespace,),
                ).fetchone()
            else:
                seq = row[0]
            conn.execute(
                """
                INSERT OR REPLACE INTO records (namespace, key, body_json, seq, updated_utc)
                VALUES (?, ?, ?, ?, ?)
                """,
                (namespace, key, json.dumps(body, sort_keys=True), seq, now),
            )
            conn.commit()

    def delete(self, namespace: str, key: str) -> bool:
        """Remove a record. Returns True if something was deleted."""
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            conn.commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body_json FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def list(self, namespace: str) -> list[dict[str, Any]]:
        """Return all records in a namespace, in first-insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT body_json FROM records WHERE namespace = ? ORDER BY seq ASC",
                (namespace,),
            ).fetchall()
        return [json.loads(row[0]) for row in rows]
