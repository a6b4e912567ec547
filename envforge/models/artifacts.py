"""Root filesystem artifact models (immutable once verified)."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Hex digest length per supported algorithm.
DIGEST_LENGTHS: dict[str, int] = {
    "sha256": 64,
    "sha512": 128,
}

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def cache_filename(url: str) -> str:
    """Derive the deterministic cache filename for *url*.

    The last path segment of the URL is used; query strings and fragments
    are ignored.  Raises ``ValueError`` if the URL has no usable filename.
    """
    name = PurePosixPath(urlparse(url).path).name
    if not name or name in (".", ".."):
        raise ValueError(f"Cannot derive a cache filename from URL {url!r}")
    return name


class ArtifactRef(BaseModel):
    """A downloadable image plus its trust anchor.

    ``expected_digest`` is a fixed-length hex string for ``algorithm``.
    It is normalized to lower case so comparison is case-insensitive.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    expected_digest: str
    algorithm: str = "sha256"

    @field_validator("algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        value = value.lower()
        if value not in DIGEST_LENGTHS:
            raise ValueError(f"Unsupported digest algorithm: {value!r}")
        return value

    @field_validator("url")
    @classmethod
    def _usable_url(cls, value: str) -> str:
        cache_filename(value)
        return value

    @field_validator("expected_digest")
    @classmethod
    def _normalize_digest(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _check_digest(self) -> "ArtifactRef":
        digest = self.expected_digest
        expected_len = DIGEST_LENGTHS[self.algorithm]
        if not digest:
            raise ValueError("expected_digest must not be empty")
        if len(digest) != expected_len or not _HEX_RE.match(digest):
            raise ValueError(
                f"expected_digest must be {expected_len} hex characters "
                f"for {self.algorithm}, got {digest!r}"
            )
        return self

    @property
    def filename(self) -> str:
        return cache_filename(self.url)

    def local_path(self, cache_dir: Path) -> Path:
        """Deterministic cache location of this artifact under *cache_dir*."""
        return Path(cache_dir) / self.filename


class VerifiedArtifact(BaseModel):
    """Handle to an artifact whose local bytes matched the expected digest.

    Only the Integrity Verifier constructs these; the pipeline accepts
    nothing else as an image source.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    digest: str
    algorithm: str = "sha256"
    local_path: Path
    size_bytes: int = 0
    verified_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
