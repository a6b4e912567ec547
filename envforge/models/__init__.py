"""envforge data models — all Pydantic v2, all frozen (immutable)."""

from envforge.models.artifacts import ArtifactRef, VerifiedArtifact, cache_filename
from envforge.models.environments import (
    INSTALL_STAGES,
    POST_INSTANTIATION_STAGES,
    TERMINAL_STATES,
    UPDATE_STAGES,
    VALID_TRANSITIONS,
    Environment,
    EnvironmentState,
    ProvisionOutcome,
    StageDefinition,
    StageFailure,
    StageResult,
)
from envforge.models.ledger import LedgerEntry

__all__ = [
    # artifacts
    "ArtifactRef",
    "VerifiedArtifact",
    "cache_filename",
    # environments
    "EnvironmentState",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "POST_INSTANTIATION_STAGES",
    "StageDefinition",
    "INSTALL_STAGES",
    "UPDATE_STAGES",
    "Environment",
    "StageResult",
    "ProvisionOutcome",
    "StageFailure",
    # ledger
    "LedgerEntry",
]
