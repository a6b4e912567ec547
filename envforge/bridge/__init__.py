"""Command Bridge — the boundary between envforge and external processes.

Exports:
    - CommandBridge / ExecTarget / ExecResult: run commands and capture status
    - ProcessRunner / SubprocessRunner: pluggable process execution
    - ControlPlane: backend list/import/unregister/manage verbs
"""

from envforge.bridge.command_bridge import (
    BridgeError,
    CommandBridge,
    ExecResult,
    ExecTarget,
    ProcessRunner,
    SubprocessRunner,
)
from envforge.bridge.control_plane import BackendError, ControlPlane

__all__ = [
    "BackendError",
    "BridgeError",
    "CommandBridge",
    "ControlPlane",
    "ExecResult",
    "ExecTarget",
    "ProcessRunner",
    "SubprocessRunner",
]
