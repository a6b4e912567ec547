"""Environment lifecycle models — strictly forward state machine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class EnvironmentState(str, Enum):
    """Lifecycle state of a provisioning run / environment."""

    REQUESTED = "requested"
    ARTIFACT_VERIFYING = "artifact_verifying"
    ARTIFACT_VERIFIED = "artifact_verified"
    INSTANTIATING = "instantiating"
    INSTANTIATED = "instantiated"
    BOOTSTRAPPING = "bootstrapping"
    CONFIGURING = "configuring"
    READY = "ready"
    FAILED = "failed"


_FORWARD: list[EnvironmentState] = [
    EnvironmentState.REQUESTED,
    EnvironmentState.ARTIFACT_VERIFYING,
    EnvironmentState.ARTIFACT_VERIFIED,
    EnvironmentState.INSTANTIATING,
    EnvironmentState.INSTANTIATED,
    EnvironmentState.BOOTSTRAPPING,
    EnvironmentState.CONFIGURING,
    EnvironmentState.READY,
]

# Each non-terminal state may advance to its successor or fail.
# READY and FAILED have no outgoing transitions.
VALID_TRANSITIONS: dict[EnvironmentState, set[EnvironmentState]] = {
    state: {successor, EnvironmentState.FAILED}
    for state, successor in zip(_FORWARD, _FORWARD[1:])
}
VALID_TRANSITIONS[EnvironmentState.READY] = set()
VALID_TRANSITIONS[EnvironmentState.FAILED] = set()

TERMINAL_STATES: frozenset[EnvironmentState] = frozenset(
    {EnvironmentState.READY, EnvironmentState.FAILED}
)

# Failed stages that leave an imported guest behind, so an update run may
# re-enter the pipeline at bootstrapping. A failure is recorded against the
# entry state of its stage, so INSTANTIATED never appears here.
POST_INSTANTIATION_STAGES: frozenset[EnvironmentState] = frozenset(
    {EnvironmentState.BOOTSTRAPPING, EnvironmentState.CONFIGURING}
)


def is_valid_transition(current: EnvironmentState, target: EnvironmentState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


class StageDefinition(BaseModel):
    """One stage of the provisioning pipeline.

    ``entry`` is the in-progress state entered when the stage starts and
    ``exit`` the state durably recorded when it succeeds.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    entry: EnvironmentState
    exit: EnvironmentState


INSTALL_STAGES: list[StageDefinition] = [
    StageDefinition(
        stage_id="verify_artifact",
        display_name="Artifact Verification",
        entry=EnvironmentState.ARTIFACT_VERIFYING,
        exit=EnvironmentState.ARTIFACT_VERIFIED,
    ),
    StageDefinition(
        stage_id="instantiate",
        display_name="Instantiation",
        entry=EnvironmentState.INSTANTIATING,
        exit=EnvironmentState.INSTANTIATED,
    ),
    StageDefinition(
        stage_id="bootstrap",
        display_name="Bootstrap",
        entry=EnvironmentState.BOOTSTRAPPING,
        exit=EnvironmentState.CONFIGURING,
    ),
    StageDefinition(
        stage_id="configure",
        display_name="Configuration",
        entry=EnvironmentState.CONFIGURING,
        exit=EnvironmentState.READY,
    ),
]

# Update runs skip artifact acquisition and instantiation.
UPDATE_STAGES: list[StageDefinition] = INSTALL_STAGES[2:]


class Environment(BaseModel):
    """Registry record of a named, provisioned instance."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: EnvironmentState
    storage_path: Path
    source_artifact_digest: str
    default_user: str = ""
    run_id: str = ""
    failed_stage: EnvironmentState | None = None
    failure_reason: str = ""
    exit_code: int | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_ready(self) -> bool:
        return self.state == EnvironmentState.READY

    @property
    def accepts_update(self) -> bool:
        """Whether an update run may re-enter the pipeline at bootstrapping."""
        if self.state == EnvironmentState.READY:
            return True
        return (
            self.state == EnvironmentState.FAILED
            and self.failed_stage in POST_INSTANTIATION_STAGES
        )


class StageResult(BaseModel):
    """Outcome of one pipeline stage. Consumed immediately, not persisted."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    success: bool
    exit_code: int | None = None
    message: str = ""


class StageFailure(RuntimeError):
    """A pipeline stage ended the run in FAILED."""

    def __init__(
        self,
        stage: EnvironmentState,
        exit_code: int | None = None,
        message: str = "",
    ) -> None:
        text = f"Stage {stage.value} failed"
        if exit_code is not None:
            text = f"{text} with exit code {exit_code}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
        self.stage = stage
        self.exit_code = exit_code
        self.message = message


class ProvisionOutcome(BaseModel):
    """Final result of one pipeline run (install or update)."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    name: str
    state: EnvironmentState
    stage_results: list[StageResult] = []
    failed_stage: EnvironmentState | None = None
    exit_code: int | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state == EnvironmentState.READY

    def raise_for_failure(self) -> None:
        """Raise ``StageFailure`` if the run did not reach READY."""
        if self.ok:
            return
        raise StageFailure(
            stage=self.failed_stage or self.state,
            exit_code=self.exit_code,
            message=self.message,
        )
