"""Append-only, hash-chained rollout ledger backed by SQLite.

Every plan and step transition and every intake decision is appended here.
The state store holds the current view; the ledger holds the history that
explains it.

Each chain key (a plan id, or ``intake``) has its own chain: an entry's
``previous_entry_hash`` is the ``entry_hash`` of the key's prior entry, and
its ``entry_hash`` seals every other field.  Editing a row breaks its seal,
deleting one breaks its successor's link.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path

from shipyard.core.errors import LedgerIntegrityError
from shipyard.core.hasher import compute_entry_hash
from shipyard.models.ledger import LedgerEntry

_FIELDS = tuple(LedgerEntry.model_fields)

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS rollout_ledger (
    seq                 INTEGER PRIMARY KEY AUTOINCREMENT,
    {", ".join(f"{name} TEXT NOT NULL" for name in _FIELDS)},
    UNIQUE (entry_id),
    UNIQUE (entry_hash)
);
CREATE INDEX IF NOT EXISTS idx_ledger_chain ON rollout_ledger(plan_id, seq);
"""

_SELECT = f"SELECT {', '.join(_FIELDS)} FROM rollout_ledger"


class RolloutLedger:
    """Append-only rollout journal.

    Parameters
    ----------
    db_path:
        SQLite database file; parent directories are created.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Reading the chain head and inserting must not interleave.
        self._append_lock = threading.Lock()
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Link *entry* to its chain head, seal it and store it.

        Returns the sealed entry.  There is no other write path.
        """
        with self._append_lock, self._connect() as conn:
            head = conn.execute(
                "SELECT entry_hash FROM rollout_ledger WHERE plan_id = ? "
                "ORDER BY seq DESC LIMIT 1",
                (entry.plan_id,),
            ).fetchone()
            linked = entry.model_copy(update={
                "previous_entry_hash": head["entry_hash"] if head else "",
                "entry_hash": "",
            })
            sealed = linked.model_copy(update={
                "entry_hash": compute_entry_hash(linked.model_dump(mode="json")),
            })
            row = sealed.model_dump(mode="json")
            conn.execute(
                f"INSERT INTO rollout_ledger ({', '.join(_FIELDS)}) "
                f"VALUES ({', '.join('?' for _ in _FIELDS)})",
                [row[name] for name in _FIELDS],
            )
        return sealed

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _query(self, where: str = "", params: tuple = ()) -> list[LedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(f"{_SELECT} {where} ORDER BY seq", params).fetchall()
        return [LedgerEntry.model_validate(dict(row)) for row in rows]

    def get_plan_entries(self, plan_id: str) -> list[LedgerEntry]:
        """Every entry under *plan_id*, oldest first."""
        return self._query("WHERE plan_id = ?", (plan_id,))

    def get_subject_history(self, plan_id: str, subject: str) -> list[LedgerEntry]:
        """Entries for one subject (the plan, a step, or an intake revision)."""
        return self._query("WHERE plan_id = ? AND subject = ?", (plan_id, subject))

    def count(self, plan_id: str) -> int:
        with self._connect() as conn:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM rollout_ledger WHERE plan_id = ?", (plan_id,)
            ).fetchone()
        return n

    def get_all_plan_ids(self) -> list[str]:
        """Every chain key, most recently written first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT plan_id FROM rollout_ledger GROUP BY plan_id ORDER BY MAX(seq) DESC"
            ).fetchall()
        return [row["plan_id"] for row in rows]

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _breaks(self, plan_id: str) -> Iterator[str]:
        expected_link = ""
        for entry in self.get_plan_entries(plan_id):
            if entry.previous_entry_hash != expected_link:
                yield (
                    f"entry {entry.entry_id} links to {entry.previous_entry_hash[:16] or '<none>'}, "
                    f"chain head was {expected_link[:16] or '<none>'} (entry removed or reordered)"
                )
            seal = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != seal:
                yield f"entry {entry.entry_id} does not match its seal (contents modified)"
            expected_link = entry.entry_hash

    def verify_chain(self, plan_id: str) -> bool:
        """Return True if *plan_id*'s chain is intact.

        Raises LedgerIntegrityError naming the first break otherwise.
        An empty chain is intact.
        """
        for problem in self._breaks(plan_id):
            raise LedgerIntegrityError(f"Ledger chain {plan_id!r} broken: {problem}")
        return True
