"""Environment Registry — single writer of Environment records.

The registry is a SQLite table keyed by environment name, so at most one
record per name can exist. Replacement is always the explicit two-step
``remove()`` then ``create()``; a failure between the steps leaves the name
absent rather than silently stale.

Mutations are serialized per name with a re-entrant lock. A pipeline run
holds the lock of its environment for the whole run through ``lock(name)``;
distinct names do not contend.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from envforge.bridge.control_plane import ControlPlane
from envforge.models.artifacts import VerifiedArtifact
from envforge.models.environments import (
    Environment,
    EnvironmentState,
    is_valid_transition,
)

logger = logging.getLogger(__name__)


_CREATE_ENVIRONMENTS = """
CREATE TABLE IF NOT EXISTS environments (
    name                   TEXT PRIMARY KEY,
    state                  TEXT NOT NULL,
    storage_path           TEXT NOT NULL,
    source_artifact_digest TEXT NOT NULL,
    default_user           TEXT NOT NULL DEFAULT '',
    run_id                 TEXT NOT NULL DEFAULT '',
    failed_stage           TEXT,
    failure_reason         TEXT NOT NULL DEFAULT '',
    exit_code              INTEGER,
    created_at             TEXT NOT NULL,
    updated_at             TEXT NOT NULL
);
"""

_COLUMNS = (
    "name, state, storage_path, source_artifact_digest, default_user, run_id, "
    "failed_stage, failure_reason, exit_code, created_at, updated_at"
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RegistryError(RuntimeError):
    """Base class for registry failures."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name = name


class AlreadyExistsError(RegistryError):
    """A record for the name is already present."""

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Environment {name!r} already exists")


class NotFoundError(RegistryError):
    """No record (and no backend instance) for the name."""

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Environment {name!r} not found")


class InvalidTransitionError(RegistryError):
    """The requested state change is not in VALID_TRANSITIONS."""

    def __init__(
        self, name: str, current: EnvironmentState, target: EnvironmentState
    ) -> None:
        super().__init__(
            name,
            f"Cannot transition {name!r} from {current.value} to {target.value}",
        )
        self.current = current
        self.target = target


class NotReadyForUpdateError(RegistryError):
    """The environment is not in a state an update run can re-enter."""

    def __init__(self, name: str, state: EnvironmentState, failed_stage: EnvironmentState | None) -> None:
        where = state.value
        if failed_stage is not None:
            where = f"{state.value} at {failed_stage.value}"
        super().__init__(
            name,
            f"Environment {name!r} is {where}; update requires ready "
            "or a failure after instantiation",
        )
        self.state = state
        self.failed_stage = failed_stage


class TeardownError(RegistryError):
    """The backend reported a non-zero status while unregistering."""

    def __init__(self, name: str, exit_code: int, detail: str = "") -> None:
        message = f"Teardown of {name!r} failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(name, message)
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class EnvironmentRegistry:
    """SQLite-backed registry of named environments.

    Parameters
    ----------
    db_path:
        SQLite database file. Created if it does not exist.
    control_plane:
        Backend used for teardown and for detecting instances that exist on
        the backend without a record.
    """

    def __init__(self, db_path: Path, control_plane: ControlPlane) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._control = control_plane
        # A name's lock lives only while some caller holds a reference to it.
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_ENVIRONMENTS)

    # ------------------------------------------------------------------
    # Per-name mutual exclusion
    # ------------------------------------------------------------------

    def _lock_for(self, name: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Hold the mutation lock of *name* for the duration of the block."""
        with self._lock_for(name):
            yield

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        return self.get(name) is not None

    def get(self, name: str) -> Environment | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM environments WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_environment(row) if row else None

    def require(self, name: str) -> Environment:
        env = self.get(name)
        if env is None:
            raise NotFoundError(name)
        return env

    def list_environments(self) -> list[Environment]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM environments ORDER BY name ASC"
            ).fetchall()
        return [self._row_to_environment(row) for row in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        storage_path: Path,
        artifact: VerifiedArtifact,
        *,
        run_id: str = "",
        default_user: str = "",
    ) -> Environment:
        """Insert a record for *name* in the INSTANTIATING state.

        Raises ``AlreadyExistsError`` if a record is present; callers that
        want replacement must ``remove()`` first.
        """
        with self._lock_for(name):
            if self.exists(name):
                raise AlreadyExistsError(name)
            now = datetime.now(timezone.utc)
            env = Environment(
                name=name,
                state=EnvironmentState.INSTANTIATING,
                storage_path=Path(storage_path),
                source_artifact_digest=artifact.digest,
                default_user=default_user,
                run_id=run_id,
                created_at=now,
                updated_at=now,
            )
            try:
                self._insert(env)
            except sqlite3.IntegrityError as exc:
                raise AlreadyExistsError(name) from exc
            logger.info("Registered environment %s at %s", name, storage_path)
            return env

    def remove(self, name: str) -> None:
        """Tear down *name* on the backend, then delete its record.

        The record is only deleted after the backend confirms success.
        Raises ``NotFoundError`` if neither a record nor a backend instance
        exists, and ``TeardownError`` on a non-zero backend status.
        """
        with self._lock_for(name):
            record = self.get(name)
            on_backend = self._control.exists(name)
            if record is None and not on_backend:
                raise NotFoundError(name)

            if on_backend:
                result = self._control.unregister(name)
                if not result.ok:
                    raise TeardownError(name, result.exit_code, result.summary())
            else:
                logger.warning(
                    "Environment %s has a record but no backend instance", name
                )

            with self._connect() as conn:
                conn.execute("DELETE FROM environments WHERE name = ?", (name,))
            logger.info("Removed environment %s", name)

    def set_state(
        self,
        name: str,
        new_state: EnvironmentState,
        *,
        failed_stage: EnvironmentState | None = None,
        reason: str = "",
        exit_code: int | None = None,
    ) -> Environment:
        """Apply a forward transition to *name*'s record.

        Raises ``InvalidTransitionError`` if the transition is not allowed.
        """
        with self._lock_for(name):
            env = self.require(name)
            if not is_valid_transition(env.state, new_state):
                raise InvalidTransitionError(name, env.state, new_state)
            updated = env.model_copy(
                update={
                    "state": new_state,
                    "failed_stage": failed_stage if new_state == EnvironmentState.FAILED else None,
                    "failure_reason": reason if new_state == EnvironmentState.FAILED else "",
                    "exit_code": exit_code if new_state == EnvironmentState.FAILED else None,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._update(updated)
            logger.info("Environment %s: %s -> %s", name, env.state.value, new_state.value)
            return updated

    def reenter(self, name: str, run_id: str, default_user: str = "") -> Environment:
        """Start a new update run on an existing environment.

        Resets the record to INSTANTIATED under *run_id* so the run can
        advance into bootstrapping. This begins a new run; it is not a
        transition out of a terminal state of the old one.

        Raises ``NotFoundError`` if there is no record and
        ``NotReadyForUpdateError`` unless the record is READY or FAILED
        after instantiation.
        """
        with self._lock_for(name):
            env = self.require(name)
            if not env.accepts_update:
                raise NotReadyForUpdateError(name, env.state, env.failed_stage)
            updated = env.model_copy(
                update={
                    "state": EnvironmentState.INSTANTIATED,
                    "run_id": run_id,
                    "default_user": default_user or env.default_user,
                    "failed_stage": None,
                    "failure_reason": "",
                    "exit_code": None,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._update(updated)
            logger.info("Environment %s re-entered for run %s", name, run_id)
            return updated

    def set_default_user(self, name: str, user: str) -> Environment:
        with self._lock_for(name):
            env = self.require(name)
            updated = env.model_copy(
                update={"default_user": user, "updated_at": datetime.now(timezone.utc)}
            )
            self._update(updated)
            return updated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _params(env: Environment) -> tuple:
        return (
            env.state.value,
            str(env.storage_path),
            env.source_artifact_digest,
            env.default_user,
            env.run_id,
            env.failed_stage.value if env.failed_stage else None,
            env.failure_reason,
            env.exit_code,
            env.created_at.isoformat(),
            env.updated_at.isoformat(),
            env.name,
        )

    def _insert(self, env: Environment) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO environments
                    (state, storage_path, source_artifact_digest, default_user,
                     run_id, failed_stage, failure_reason, exit_code,
                     created_at, updated_at, name)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._params(env),
            )

    def _update(self, env: Environment) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE environments SET
                    state = ?, storage_path = ?, source_artifact_digest = ?,
                    default_user = ?, run_id = ?, failed_stage = ?,
                    failure_reason = ?, exit_code = ?, created_at = ?,
                    updated_at = ?
                WHERE name = ?
                """,
                self._params(env),
            )

    @staticmethod
    def _row_to_environment(row: tuple) -> Environment:
        (
            name,
            state,
            storage_path,
            digest,
            default_user,
            run_id,
            failed_stage,
            failure_reason,
            exit_code,
            created_at,
            updated_at,
        ) = row
        return Environment(
            name=name,
            state=EnvironmentState(state),
            storage_path=Path(storage_path),
            source_artifact_digest=digest,
            default_user=default_user,
            run_id=run_id,
            failed_stage=EnvironmentState(failed_stage) if failed_stage else None,
            failure_reason=failure_reason,
            exit_code=exit_code,
            created_at=created_at,
            updated_at=updated_at,
        )
