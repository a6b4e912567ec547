"""Transition ledger entry model (append-only, hash-chained).

One entry is written per state transition of a provisioning run. Entries are
scoped to ``run_id`` and carry the environment name so the history of a
name can be reconstructed across runs.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the transition ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    environment: str
    stage_id: str
    state_transition: str  # "from_state->to_state", e.g. "requested->artifact_verifying"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: str = ""
    exit_code: int | None = None
    artifact_digest: str = ""
    previous_entry_hash: str = ""  # entry_hash of the previous entry in this run
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]
