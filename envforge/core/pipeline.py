"""Provisioning Pipeline — the staged controller for install and update runs.

The pipeline wires together the IntegrityVerifier, EnvironmentRegistry,
TransitionLedger, ControlPlane and CommandBridge. Stages run one at a time:

    verify_artifact -> instantiate -> bootstrap -> configure

Each stage's success is durably recorded (registry record once it exists,
ledger always) before the next stage starts, so a crash leaves the
environment in the last completed state. Every stage failure is terminal for
the run: the pipeline records ``FAILED`` with the stage and exit code and
returns; it never retries.

Partial guest changes made by a failed bootstrap or configure stage are not
rolled back.
"""

from __future__ import annotations

import logging
import re
import shlex
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx

from envforge.bridge.command_bridge import (
    BridgeError,
    CommandBridge,
    ExecResult,
    ExecTarget,
    ProcessRunner,
)
from envforge.bridge.control_plane import BackendError, ControlPlane
from envforge.config import ProvisionConfig
from envforge.core.ledger import TransitionLedger
from envforge.core.registry import (
    EnvironmentRegistry,
    InvalidTransitionError,
    RegistryError,
)
from envforge.core.verifier import FetchError, IntegrityError, IntegrityVerifier
from envforge.models.artifacts import ArtifactRef, VerifiedArtifact
from envforge.models.environments import (
    INSTALL_STAGES,
    UPDATE_STAGES,
    EnvironmentState,
    ProvisionOutcome,
    StageDefinition,
    StageFailure,
    StageResult,
    is_valid_transition,
)
from envforge.models.ledger import LedgerEntry

logger = logging.getLogger(__name__)

_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

# Errors a stage reports as an ordinary failed StageResult.
_STAGE_ERRORS = (
    FetchError,
    IntegrityError,
    BridgeError,
    BackendError,
    RegistryError,
    OSError,
)


class _Run:
    """In-flight state of one pipeline run."""

    def __init__(
        self,
        run_id: str,
        name: str,
        user: str,
        state: EnvironmentState,
        *,
        storage_path: Path,
        artifact_ref: ArtifactRef | None = None,
        registered: bool = False,
    ) -> None:
        self.run_id = run_id
        self.name = name
        self.user = user
        self.state = state
        self.storage_path = storage_path
        self.artifact_ref = artifact_ref
        self.artifact: VerifiedArtifact | None = None
        self.registered = registered
        self.results: list[StageResult] = []
        self.failed_stage: EnvironmentState | None = None
        self.exit_code: int | None = None
        self.message = ""
        self.cancel_requested = threading.Event()


def _new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"ef-{ts}-{uuid.uuid4().hex[:6]}"


def validate_names(name: str, user: str) -> None:
    """Reject environment and user names that are unsafe to pass to a shell."""
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid environment name: {name!r}")
    if not _USERNAME_RE.match(user):
        raise ValueError(f"Invalid user name: {user!r}")


class ProvisioningPipeline:
    """Drives install and update runs through their stages.

    Parameters
    ----------
    config:
        Provisioning configuration (paths, commands, playbook location).
    registry:
        Environment registry; the only writer of Environment records.
    verifier:
        Integrity verifier for the root filesystem image.
    bridge:
        Command bridge used for in-guest commands.
    control_plane:
        Backend verbs used for import and finalization.
    ledger:
        Transition ledger receiving one entry per state change.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        registry: EnvironmentRegistry,
        verifier: IntegrityVerifier,
        bridge: CommandBridge,
        control_plane: ControlPlane,
        ledger: TransitionLedger,
    ) -> None:
        self.config = config
        self.registry = registry
        self.verifier = verifier
        self.bridge = bridge
        self.control_plane = control_plane
        self.ledger = ledger
        self._pending_cancel = threading.Event()
        self._active_runs: dict[str, _Run] = {}
        self._runs_guard = threading.Lock()
        self._handlers: dict[str, Callable[[_Run], StageResult]] = {
            "verify_artifact": self._verify_artifact,
            "instantiate": self._instantiate,
            "bootstrap": self._bootstrap,
            "configure": self._configure,
        }

    @classmethod
    def from_config(
        cls,
        config: ProvisionConfig | None = None,
        *,
        runner: ProcessRunner | None = None,
        http_client: httpx.Client | None = None,
    ) -> "ProvisioningPipeline":
        """Build a pipeline and all of its collaborators from *config*."""
        config = config or ProvisionConfig()
        bridge = CommandBridge(config.backend_executable, runner)
        control = ControlPlane(bridge, backend_version=config.backend_version)
        return cls(
            config=config,
            registry=EnvironmentRegistry(config.registry_path, control),
            verifier=IntegrityVerifier(
                config.cache_dir,
                client=http_client,
                timeout=config.fetch_timeout_seconds,
            ),
            bridge=bridge,
            control_plane=control,
            ledger=TransitionLedger(config.registry_path),
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def default_artifact(self) -> ArtifactRef:
        """The configured root filesystem image.

        Raises ``ValueError`` if no expected digest is configured.
        """
        if not self.config.image_digest:
            raise ValueError(
                "No image digest configured; set ENVFORGE_IMAGE_DIGEST "
                "or pass --image-digest"
            )
        return ArtifactRef(
            url=self.config.image_url,
            expected_digest=self.config.image_digest,
            algorithm=self.config.digest_algorithm,
        )

    def install(
        self,
        name: str,
        user: str,
        *,
        storage_path: Path | None = None,
        artifact: ArtifactRef | None = None,
    ) -> ProvisionOutcome:
        """Run the full pipeline from REQUESTED.

        An existing environment of the same name is removed inside the
        instantiate stage, after the new artifact has been verified.
        """
        validate_names(name, user)
        artifact = artifact or self.default_artifact()
        run = _Run(
            _new_run_id(),
            name,
            user,
            EnvironmentState.REQUESTED,
            storage_path=Path(storage_path or self.config.storage_path_for(name)),
            artifact_ref=artifact,
        )
        logger.info("Install run %s for %s (user %s)", run.run_id, name, user)
        with self.registry.lock(name):
            self._record(run, "request", "none->requested", detail=artifact.url)
            return self._drive(run, INSTALL_STAGES)

    def update(self, name: str, user: str) -> ProvisionOutcome:
        """Re-provision an existing environment, entering at bootstrapping.

        Raises ``NotFoundError`` if *name* has no record and
        ``NotReadyForUpdateError`` unless it is READY or failed after
        instantiation. Never creates an environment.
        """
        validate_names(name, user)
        run_id = _new_run_id()
        logger.info("Update run %s for %s (user %s)", run_id, name, user)
        with self.registry.lock(name):
            previous = self.registry.require(name)
            env = self.registry.reenter(name, run_id, user)
            run = _Run(
                run_id,
                name,
                user,
                env.state,
                storage_path=env.storage_path,
                registered=True,
            )
            self._record(
                run,
                "reenter",
                f"{previous.state.value}->{env.state.value}",
                artifact_digest=env.source_artifact_digest,
            )
            return self._drive(run, UPDATE_STAGES)

    def cancel(self) -> None:
        """Cancel the runs in flight, honoured before their next stage starts.

        With no run in flight the request is held for the next run to start
        and is consumed by it. Later runs are unaffected.
        """
        with self._runs_guard:
            if not self._active_runs:
                self._pending_cancel.set()
                return
            for run in self._active_runs.values():
                run.cancel_requested.set()

    @property
    def cancelled(self) -> bool:
        """Whether a cancellation is pending or applies to a run in flight."""
        with self._runs_guard:
            if self._pending_cancel.is_set():
                return True
            return any(r.cancel_requested.is_set() for r in self._active_runs.values())

    # ------------------------------------------------------------------
    # Controller
    # ------------------------------------------------------------------

    def _drive(self, run: _Run, stages: list[StageDefinition]) -> ProvisionOutcome:
        with self._runs_guard:
            if self._pending_cancel.is_set():
                self._pending_cancel.clear()
                run.cancel_requested.set()
            self._active_runs[run.run_id] = run
        try:
            return self._drive_stages(run, stages)
        finally:
            with self._runs_guard:
                self._active_runs.pop(run.run_id, None)

    def _drive_stages(
        self, run: _Run, stages: list[StageDefinition]
    ) -> ProvisionOutcome:
        for stage in stages:
            if run.cancel_requested.is_set():
                logger.warning("Run %s cancelled before %s", run.run_id, stage.stage_id)
                self._fail(run, stage, "cancelled")
                break

            if run.state != stage.entry:
                self._advance(run, stage, stage.entry)

            logger.info("[%s] %s started", run.name, stage.display_name)
            try:
                result = self._handlers[stage.stage_id](run)
            except _STAGE_ERRORS as exc:
                result = StageResult(
                    stage_id=stage.stage_id,
                    success=False,
                    exit_code=getattr(exc, "exit_code", None),
                    message=str(exc),
                )
            except Exception as exc:
                self._fail(run, stage, f"unexpected error: {exc}")
                raise
            run.results.append(result)

            if not result.success:
                logger.error(
                    "[%s] %s failed (exit %s): %s",
                    run.name,
                    stage.display_name,
                    result.exit_code,
                    result.message,
                )
                self._fail(run, stage, result.message, result.exit_code)
                break

            logger.info("[%s] %s completed", run.name, stage.display_name)
            self._advance(run, stage, stage.exit)

        return ProvisionOutcome(
            run_id=run.run_id,
            name=run.name,
            state=run.state,
            stage_results=list(run.results),
            failed_stage=run.failed_stage,
            exit_code=run.exit_code,
            message=run.message,
        )

    def _advance(
        self,
        run: _Run,
        stage: StageDefinition,
        target: EnvironmentState,
        *,
        failed_stage: EnvironmentState | None = None,
        detail: str = "",
        exit_code: int | None = None,
    ) -> None:
        if not is_valid_transition(run.state, target):
            raise InvalidTransitionError(run.name, run.state, target)
        if run.registered:
            self.registry.set_state(
                run.name,
                target,
                failed_stage=failed_stage,
                reason=detail,
                exit_code=exit_code,
            )
        self._record(
            run,
            stage.stage_id,
            f"{run.state.value}->{target.value}",
            detail=detail,
            exit_code=exit_code,
        )
        run.state = target

    def _fail(
        self,
        run: _Run,
        stage: StageDefinition,
        message: str,
        exit_code: int | None = None,
    ) -> None:
        run.failed_stage = stage.entry
        run.exit_code = exit_code
        run.message = message
        self._advance(
            run,
            stage,
            EnvironmentState.FAILED,
            failed_stage=stage.entry,
            detail=message,
            exit_code=exit_code,
        )

    def _record(
        self,
        run: _Run,
        stage_id: str,
        transition: str,
        *,
        detail: str = "",
        exit_code: int | None = None,
        artifact_digest: str = "",
    ) -> LedgerEntry:
        return self.ledger.append(
            LedgerEntry(
                run_id=run.run_id,
                environment=run.name,
                stage_id=stage_id,
                state_transition=transition,
                detail=detail,
                exit_code=exit_code,
                artifact_digest=artifact_digest
                or (run.artifact.digest if run.artifact else ""),
            )
        )

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _command_failed(stage_id: str, label: str, result: ExecResult) -> StageResult:
        detail = result.summary()
        message = f"{label} exited {result.exit_code}"
        if detail:
            message = f"{message}: {detail}"
        return StageResult(
            stage_id=stage_id,
            success=False,
            exit_code=result.exit_code,
            message=message,
        )

    def _verify_artifact(self, run: _Run) -> StageResult:
        if run.artifact_ref is None:
            raise RuntimeError(f"Run {run.run_id} has no artifact to verify")
        run.artifact = self.verifier.verify(run.artifact_ref)
        return StageResult(
            stage_id="verify_artifact",
            success=True,
            exit_code=0,
            message=f"{run.artifact.algorithm}:{run.artifact.digest}",
        )

    def _instantiate(self, run: _Run) -> StageResult:
        if run.artifact is None:
            raise RuntimeError(f"Run {run.run_id} reached instantiate unverified")
        if self.registry.exists(run.name) or self.control_plane.exists(run.name):
            logger.info("Replacing existing environment %s", run.name)
            self.registry.remove(run.name)

        run.storage_path.mkdir(parents=True, exist_ok=True)
        self.registry.create(
            run.name,
            run.storage_path,
            run.artifact,
            run_id=run.run_id,
            default_user=run.user,
        )
        run.registered = True

        result = self.control_plane.import_instance(
            run.name, run.storage_path, run.artifact.local_path
        )
        if not result.ok:
            return self._command_failed("instantiate", "import", result)
        return StageResult(stage_id="instantiate", success=True, exit_code=0)

    def _bootstrap(self, run: _Run) -> StageResult:
        target = ExecTarget.guest(run.name, "root")
        for command in self.config.bootstrap_commands:
            logger.info("[%s] bootstrap: %s", run.name, command)
            result = self.bridge.run_shell(target, command)
            if not result.ok:
                return self._command_failed("bootstrap", repr(command), result)
        return StageResult(
            stage_id="bootstrap",
            success=True,
            exit_code=0,
            message=f"{len(self.config.bootstrap_commands)} commands",
        )

    def runner_commands(self, user: str) -> list[str]:
        """Shell commands that stage and run the automation playbook."""
        run_dir = shlex.quote(self.config.playbook_dir)
        source = shlex.quote(self.config.playbook_source.rstrip("/") + "/.")
        return [
            f"mkdir -p {run_dir}",
            f"cp -Rp {source} {run_dir}",
            f"chmod -R og-rwx {run_dir}",
            f"cd {run_dir} && ansible-playbook {shlex.quote(self.config.playbook)} "
            f"-v --extra-vars username={shlex.quote(user)}",
        ]

    def _configure(self, run: _Run) -> StageResult:
        target = ExecTarget.guest(run.name, "root")
        for command in self.runner_commands(run.user):
            logger.info("[%s] configure: %s", run.name, command)
            result = self.bridge.run_shell(target, command)
            if not result.ok:
                return self._command_failed("configure", repr(command), result)

        result = self.control_plane.set_default_user(run.name, run.user)
        if not result.ok:
            return self._command_failed("configure", "set-default-user", result)
        self.registry.set_default_user(run.name, run.user)

        if self.config.sparse_storage:
            # The backend only changes storage mode of a stopped instance.
            result = self.control_plane.terminate(run.name)
            if not result.ok:
                return self._command_failed("configure", "terminate", result)
            result = self.control_plane.set_sparse(run.name, True)
            if not result.ok:
                return self._command_failed("configure", "set-sparse", result)

        return StageResult(stage_id="configure", success=True, exit_code=0)
