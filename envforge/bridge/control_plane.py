"""Backend control-plane verbs built on the Command Bridge.

The virtualization backend is treated as an opaque process-exit-code API:
each verb returns the raw ``ExecResult`` and leaves the decision to the
caller.
"""

from __future__ import annotations

import logging
from pathlib import Path

from envforge.bridge.command_bridge import CommandBridge, ExecResult, ExecTarget

logger = logging.getLogger(__name__)

# Reply of the backend listing on a host without any instance. It arrives on
# stdout together with a non-zero exit code.
_NO_INSTANCES_MARKER = "no installed distributions"


class BackendError(RuntimeError):
    """A backend verb launched but reported a non-zero exit code."""

    def __init__(self, argv: list[str], exit_code: int, detail: str = "") -> None:
        verb = " ".join(argv[1:]) if len(argv) > 1 else "<none>"
        message = f"Backend command {verb!r} exited {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code
        self.detail = detail


class ControlPlane:
    """List, import, unregister and manage named instances."""

    def __init__(self, bridge: CommandBridge, *, backend_version: int = 2) -> None:
        self._bridge = bridge
        self._version = backend_version

    @property
    def bridge(self) -> CommandBridge:
        return self._bridge

    def list_instances(self) -> list[str]:
        """Names of all instances known to the backend.

        A host without instances answers with a non-zero exit code and a
        "no installed distributions" notice; that reply is an empty set.
        Any other non-zero exit raises ``BackendError``, since an unknown
        instance set cannot be reasoned about.
        """
        result = self._bridge.run(ExecTarget.control(), ["--list", "--quiet"])
        stdout = result.stdout.replace("\x00", "")
        if not result.ok:
            notice = f"{stdout}\n{result.stderr}".lower()
            if _NO_INSTANCES_MARKER in notice or not stdout.strip():
                return []
            raise BackendError(result.argv, result.exit_code, result.summary())
        names = []
        for line in stdout.splitlines():
            line = line.strip()
            if line:
                names.append(line)
        return names

    def exists(self, name: str) -> bool:
        return name in self.list_instances()

    def import_instance(self, name: str, storage_path: Path, image: Path) -> ExecResult:
        logger.info("Importing %s into %s from %s", name, storage_path, image)
        return self._bridge.run(
            ExecTarget.control(),
            [
                "--import", name, str(storage_path), str(image),
                "--version", str(self._version),
            ],
        )

    def unregister(self, name: str) -> ExecResult:
        logger.info("Unregistering %s", name)
        return self._bridge.run(ExecTarget.control(), ["--unregister", name])

    def set_default_user(self, name: str, user: str) -> ExecResult:
        return self._bridge.run(
            ExecTarget.control(),
            ["--manage", name, "--set-default-user", user],
        )

    def set_sparse(self, name: str, enabled: bool = True) -> ExecResult:
        return self._bridge.run(
            ExecTarget.control(),
            ["--manage", name, "--set-sparse", "true" if enabled else "false"],
        )

    def terminate(self, name: str) -> ExecResult:
        return self._bridge.run(ExecTarget.control(), ["--terminate", name])
