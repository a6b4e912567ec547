"""Command Bridge — runs commands against the backend or inside a guest.

Every call is synchronous and returns an ``ExecResult``; callers inspect
``exit_code`` on the returned value and never ambient process state. Only a
failure to launch the process raises (``BridgeError``). There is no implicit
retry.

Process execution is pluggable through the ``ProcessRunner`` Protocol:
1. **SubprocessRunner** — the default, ``subprocess.run`` with captured output.
2. **Custom runners** — any object with ``run(argv) -> ExecResult``.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class BridgeError(RuntimeError):
    """Raised when a command could not be launched at all."""

    def __init__(self, argv: list[str], reason: str) -> None:
        super().__init__(f"Cannot launch {argv[0] if argv else '<empty>'}: {reason}")
        self.argv = argv
        self.reason = reason


class ExecResult(BaseModel):
    """Captured outcome of one external process."""

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Exit code 0 is the only success signal."""
        return self.exit_code == 0

    def summary(self, limit: int = 400) -> str:
        """Short diagnostic text: stderr if present, otherwise stdout."""
        text = (self.stderr or self.stdout).strip()
        if len(text) > limit:
            text = "..." + text[-limit:]
        return text


class ExecTarget(BaseModel):
    """Where a command runs: the backend control plane or a named guest."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["control", "guest"]
    instance: str = ""
    user: str = "root"

    @classmethod
    def control(cls) -> "ExecTarget":
        return cls(kind="control")

    @classmethod
    def guest(cls, instance: str, user: str = "root") -> "ExecTarget":
        if not instance:
            raise ValueError("A guest target needs an instance name")
        return cls(kind="guest", instance=instance, user=user)

    def describe(self) -> str:
        if self.kind == "control":
            return "control-plane"
        return f"{self.instance}:{self.user}"


@runtime_checkable
class ProcessRunner(Protocol):
    """Protocol for process execution backends."""

    def run(self, argv: list[str]) -> ExecResult:
        """Run *argv* to completion and return its captured result."""
        ...


class SubprocessRunner:
    """Runs commands with ``subprocess.run``, blocking until exit.

    ``WSL_UTF8=1`` is set so the backend prints UTF-8 instead of UTF-16.
    """

    def __init__(self, extra_env: dict[str, str] | None = None) -> None:
        self._env = {**os.environ, "WSL_UTF8": "1", **(extra_env or {})}

    def run(self, argv: list[str]) -> ExecResult:
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=self._env,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise BridgeError(argv, str(exc)) from exc
        return ExecResult(
            argv=argv,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )


class CommandBridge:
    """Translates ``(target, command)`` into backend argv and runs it.

    Parameters
    ----------
    executable:
        The backend control binary (e.g. ``wsl.exe``).
    runner:
        Process runner; defaults to ``SubprocessRunner``.
    """

    def __init__(
        self,
        executable: str = "wsl.exe",
        runner: ProcessRunner | None = None,
    ) -> None:
        self._executable = executable
        self._runner = runner or SubprocessRunner()

    @property
    def executable(self) -> str:
        return self._executable

    def build_argv(self, target: ExecTarget, command: list[str]) -> list[str]:
        if target.kind == "control":
            return [self._executable, *command]
        return [
            self._executable,
            "--distribution", target.instance,
            "--user", target.user,
            "--exec", *command,
        ]

    def run(self, target: ExecTarget, command: list[str]) -> ExecResult:
        """Run *command* against *target* and return its ``ExecResult``."""
        argv = self.build_argv(target, command)
        logger.debug("[%s] exec %s", target.describe(), argv)
        result = self._runner.run(argv)
        if result.ok:
            logger.debug("[%s] exit 0", target.describe())
        else:
            logger.warning(
                "[%s] %s exited %d: %s",
                target.describe(),
                command[0] if command else "<empty>",
                result.exit_code,
                result.summary(),
            )
        return result

    def run_shell(self, target: ExecTarget, script: str) -> ExecResult:
        """Run a shell command line inside a guest via ``/bin/sh -c``."""
        return self.run(target, ["/bin/sh", "-c", script])
