"""Provisioning configuration — env-driven.

Centralized config using pydantic-settings. Reads from a .env file and
ENVFORGE_* environment variables; CLI options override individual fields.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_IMAGE_URL = (
    "https://cloud-images.ubuntu.com/wsl/releases/24.04/current/"
    "ubuntu-noble-wsl-amd64-24.04lts.rootfs.tar.gz"
)

DEFAULT_BOOTSTRAP_COMMANDS: list[str] = [
    "apt-get update",
    "DEBIAN_FRONTEND=noninteractive apt-get -y full-upgrade",
    "DEBIAN_FRONTEND=noninteractive apt-get -y install ansible git python3-apt sudo",
]


class ProvisionConfig(BaseSettings):
    """Provisioning configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export ENVFORGE_IMAGE_DIGEST=3f1c...e9
        export ENVFORGE_LOG_LEVEL=DEBUG
        export ENVFORGE_REGISTRY_PATH=/data/envforge.db
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENVFORGE_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    cache_dir: Path = Path(".envforge/cache")
    registry_path: Path = Path(".envforge/registry.db")
    storage_root: Path = Path(".envforge/instances")

    # Backend control plane
    backend_executable: str = "wsl.exe"
    backend_version: int = 2

    # Root filesystem artifact
    image_url: str = DEFAULT_IMAGE_URL
    image_digest: str = ""  # must be supplied out of band
    digest_algorithm: str = "sha256"
    fetch_timeout_seconds: float = 60.0

    # In-guest setup
    bootstrap_commands: list[str] = list(DEFAULT_BOOTSTRAP_COMMANDS)
    playbook_source: str = "/mnt/c/envforge/ansible"
    playbook_dir: str = "/opt/ansible"
    playbook: str = "playbooks/main.yml"
    sparse_storage: bool = True

    @field_validator("digest_algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        value = value.lower()
        if value not in ("sha256", "sha512"):
            raise ValueError(f"Unsupported digest algorithm: {value!r}")
        return value

    def storage_path_for(self, name: str) -> Path:
        """Default backing storage directory for environment *name*."""
        return self.storage_root / name
