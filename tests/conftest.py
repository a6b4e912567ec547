"""Shared test fixtures for envforge."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from envforge.bridge.command_bridge import CommandBridge, ExecResult
from envforge.bridge.control_plane import ControlPlane
from envforge.config import ProvisionConfig
from envforge.core.ledger import TransitionLedger
from envforge.core.pipeline import ProvisioningPipeline
from envforge.core.registry import EnvironmentRegistry
from envforge.core.verifier import IntegrityVerifier
from envforge.models.artifacts import ArtifactRef, VerifiedArtifact

IMAGE_URL = "https://images.example.test/releases/noble/ubuntu-noble-rootfs.tar.gz"
IMAGE_BYTES = b"\x1f\x8b" + b"root filesystem image bytes " * 64
IMAGE_DIGEST = hashlib.sha256(IMAGE_BYTES).hexdigest()


class FakeRunner:
    """Scripted stand-in for the backend executable.

    Tracks imported instances so ``--list`` reflects ``--import`` and
    ``--unregister``. Any argv containing a registered fragment returns the
    scripted exit code instead.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.instances: list[str] = []
        self._failures: list[tuple[str, int, str, str]] = []

    def fail_on(
        self, fragment: str, exit_code: int = 1, stderr: str = "", stdout: str = ""
    ) -> None:
        self._failures.append((fragment, exit_code, stderr, stdout))

    def clear_failures(self) -> None:
        self._failures.clear()

    def run(self, argv: list[str]) -> ExecResult:
        self.calls.append(list(argv))
        joined = " ".join(argv)
        for fragment, exit_code, stderr, stdout in self._failures:
            if fragment in joined:
                return ExecResult(
                    argv=argv, exit_code=exit_code, stdout=stdout, stderr=stderr
                )

        if "--list" in argv:
            return ExecResult(
                argv=argv, exit_code=0, stdout="\n".join(self.instances) + "\n"
            )
        if "--import" in argv:
            name = argv[argv.index("--import") + 1]
            self.instances.append(name)
        elif "--unregister" in argv:
            name = argv[argv.index("--unregister") + 1]
            self.instances.remove(name)
        return ExecResult(argv=argv, exit_code=0)

    def commands(self) -> list[str]:
        return [" ".join(argv) for argv in self.calls]

    def index_of(self, fragment: str) -> int:
        """Position of the first call containing *fragment*, or -1."""
        for i, command in enumerate(self.commands()):
            if fragment in command:
                return i
        return -1


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def bridge(fake_runner: FakeRunner) -> CommandBridge:
    return CommandBridge("wsl.exe", fake_runner)


@pytest.fixture
def control_plane(bridge: CommandBridge) -> ControlPlane:
    return ControlPlane(bridge)


@pytest.fixture
def registry(tmp_path: Path, control_plane: ControlPlane) -> EnvironmentRegistry:
    """A fresh registry backed by a temp SQLite database."""
    return EnvironmentRegistry(tmp_path / "registry.db", control_plane)


@pytest.fixture
def ledger(tmp_path: Path) -> TransitionLedger:
    return TransitionLedger(tmp_path / "ledger.db")


@pytest.fixture
def image_requests() -> list[httpx.Request]:
    """Requests seen by the mock image server."""
    return []


@pytest.fixture
def http_client(image_requests: list[httpx.Request]) -> httpx.Client:
    """An httpx client whose transport serves IMAGE_BYTES for IMAGE_URL."""

    def handler(request: httpx.Request) -> httpx.Response:
        image_requests.append(request)
        if str(request.url) == IMAGE_URL:
            return httpx.Response(200, content=IMAGE_BYTES)
        return httpx.Response(404, content=b"not found")

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def verifier(tmp_path: Path, http_client: httpx.Client) -> IntegrityVerifier:
    return IntegrityVerifier(tmp_path / "cache", client=http_client)


@pytest.fixture
def artifact_ref() -> ArtifactRef:
    return ArtifactRef(url=IMAGE_URL, expected_digest=IMAGE_DIGEST)


@pytest.fixture
def verified_artifact(tmp_path: Path) -> VerifiedArtifact:
    path = tmp_path / "image.tar.gz"
    path.write_bytes(IMAGE_BYTES)
    return VerifiedArtifact(
        url=IMAGE_URL, digest=IMAGE_DIGEST, local_path=path, size_bytes=len(IMAGE_BYTES)
    )


@pytest.fixture
def config(tmp_path: Path) -> ProvisionConfig:
    return ProvisionConfig(
        cache_dir=tmp_path / "cache",
        registry_path=tmp_path / "registry.db",
        storage_root=tmp_path / "instances",
        image_url=IMAGE_URL,
        image_digest=IMAGE_DIGEST,
    )


@pytest.fixture
def make_pipeline(
    config: ProvisionConfig,
    fake_runner: FakeRunner,
    http_client: httpx.Client,
) -> Callable[..., ProvisioningPipeline]:
    """Factory fixture: a pipeline wired to the fake runner and mock server."""

    def _factory(**overrides) -> ProvisioningPipeline:
        cfg = config.model_copy(update=overrides) if overrides else config
        return ProvisioningPipeline.from_config(
            cfg, runner=fake_runner, http_client=http_client
        )

    return _factory


@pytest.fixture
def pipeline(make_pipeline: Callable[..., ProvisioningPipeline]) -> ProvisioningPipeline:
    return make_pipeline()


@pytest.fixture
def image_url() -> str:
    return IMAGE_URL


@pytest.fixture
def image_bytes() -> bytes:
    return IMAGE_BYTES


@pytest.fixture
def image_digest() -> str:
    return IMAGE_DIGEST
