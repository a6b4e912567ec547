"""Transition ledger: the durable history of every environment state change.

Each run owns its own chain. An entry is sealed with a hash over its fields
and the seal of the entry before it in the same run, so editing or dropping
a row breaks every later seal. Rows are only ever inserted; the ledger has
no update or delete path. It shares the registry's SQLite file, in WAL mode
so ``envforge history`` can read while a run writes.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from envforge.core.hasher import compute_entry_hash
from envforge.models.ledger import LedgerEntry


_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS transition_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    environment         TEXT NOT NULL,
    stage_id            TEXT NOT NULL,
    state_transition    TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    detail              TEXT NOT NULL DEFAULT '',
    exit_code           INTEGER,
    artifact_digest     TEXT NOT NULL DEFAULT '',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_ledger_run ON transition_ledger(run_id, id);
"""

_CREATE_IDX_ENV = """
CREATE INDEX IF NOT EXISTS idx_ledger_env ON transition_ledger(environment, id);
"""

# Stored columns in LedgerEntry field order; ``id`` only orders rows.
_FIELDS = (
    "entry_id",
    "run_id",
    "environment",
    "stage_id",
    "state_transition",
    "timestamp_utc",
    "detail",
    "exit_code",
    "artifact_digest",
    "previous_entry_hash",
    "entry_hash",
)
_COLUMNS = ", ".join(_FIELDS)
_PLACEHOLDERS = ", ".join("?" for _ in _FIELDS)


class LedgerIntegrityError(RuntimeError):
    """A run's chain of seals does not check out."""


class TransitionLedger:
    """Insert-only log of state transitions, chained per run.

    Parameters
    ----------
    db_path:
        SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_ENV)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            with conn:
                yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Seal *entry* onto the end of its run's chain and store it.

        Any seal fields on *entry* are ignored. The stored copy, carrying the
        link to the run's previous seal and its own seal, is returned.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM transition_ledger "
                "WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (entry.run_id,),
            ).fetchone()
            link = row[0] if row else ""
            unsealed = entry.model_copy(
                update={"previous_entry_hash": link, "entry_hash": ""}
            )
            sealed = unsealed.model_copy(
                update={
                    "entry_hash": compute_entry_hash(unsealed.model_dump(mode="json"))
                }
            )
            stored = sealed.model_dump(mode="json")
            conn.execute(
                f"INSERT INTO transition_ledger ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                tuple(stored[field] for field in _FIELDS),
            )
        return sealed

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _select(self, where: str, params: tuple, *, newest_first: bool = False) -> list[LedgerEntry]:
        order = "DESC" if newest_first else "ASC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM transition_ledger WHERE {where} ORDER BY id {order}",
                params,
            ).fetchall()
        return [LedgerEntry(**dict(zip(_FIELDS, row))) for row in rows]

    def get_latest(self, run_id: str) -> LedgerEntry | None:
        entries = self._select("run_id = ?", (run_id,), newest_first=True)
        return entries[0] if entries else None

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """One run's entries, oldest first."""
        return self._select("run_id = ?", (run_id,))

    def get_environment_entries(self, environment: str) -> list[LedgerEntry]:
        """Entries of every run against *environment*, oldest first."""
        return self._select("environment = ?", (environment,))

    def get_run_ids(self, environment: str | None = None) -> list[str]:
        """Distinct run ids, most recent first."""
        where, params = ("", ()) if environment is None else ("WHERE environment = ? ", (environment,))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT run_id FROM transition_ledger {where}"
                "GROUP BY run_id ORDER BY MAX(id) DESC",
                params,
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Recompute every seal of *run_id* and check each link.

        Returns True for an intact run; raises ``LedgerIntegrityError`` at
        the first entry whose link or seal does not match.
        """
        link = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != link:
                raise LedgerIntegrityError(
                    f"Entry {entry.entry_id} of run {run_id} links to "
                    f"{entry.previous_entry_hash!r}, the run's prior seal is {link!r}"
                )
            seal = compute_entry_hash(entry.model_dump(mode="json"))
            if seal != entry.entry_hash:
                raise LedgerIntegrityError(
                    f"Entry {entry.entry_id} of run {run_id} was altered: "
                    f"stored seal {entry.entry_hash!r}, recomputed {seal!r}"
                )
            link = entry.entry_hash
        return True
