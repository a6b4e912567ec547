"""Integrity Verifier — fetch once, re-hash always, fail closed.

A cached image is never trusted on its own: every call to ``verify()``
recomputes the digest of the local bytes. A mismatching file is left in
place for inspection but never handed out as verified.

Cache layout: {cache_dir}/{filename derived from the URL}
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from envforge.core.hasher import digests_match, file_digest
from envforge.models.artifacts import ArtifactRef, VerifiedArtifact

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Raised when an artifact cannot be downloaded or written to the cache."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class IntegrityError(RuntimeError):
    """Raised when the local bytes do not hash to the expected digest."""

    def __init__(self, expected: str, actual: str, path: Path) -> None:
        super().__init__(
            f"Digest mismatch for {path}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
        self.path = path


class IntegrityVerifier:
    """Downloads artifacts into a cache and verifies their digests.

    Parameters
    ----------
    cache_dir:
        Directory holding downloaded artifacts. Created if missing.
    client:
        Optional ``httpx.Client``. When omitted a client is created per
        download with *timeout*.
    timeout:
        Network timeout in seconds for the default client.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._client = client
        self._timeout = timeout

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, ref: ArtifactRef) -> VerifiedArtifact:
        """Return a ``VerifiedArtifact`` for *ref* or raise.

        Raises
        ------
        FetchError
            The artifact was not cached and could not be downloaded.
        IntegrityError
            The local bytes do not match ``ref.expected_digest``.
        """
        path = ref.local_path(self._cache_dir)
        if path.exists():
            logger.info("Using cached artifact %s", path)
        else:
            self.fetch(ref.url, path)

        try:
            actual = file_digest(path, ref.algorithm)
        except OSError as exc:
            raise FetchError(ref.url, f"cannot read {path}: {exc}") from exc

        if not digests_match(ref.expected_digest, actual):
            logger.error(
                "Integrity check failed for %s: expected %s, got %s",
                path,
                ref.expected_digest,
                actual,
            )
            raise IntegrityError(ref.expected_digest, actual, path)

        logger.info("Verified %s (%s=%s)", path.name, ref.algorithm, actual)
        return VerifiedArtifact(
            url=ref.url,
            digest=actual,
            algorithm=ref.algorithm,
            local_path=path,
            size_bytes=path.stat().st_size,
        )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(self, url: str, dest: Path) -> Path:
        """Stream *url* into *dest*.

        Bytes are written to a ``.part`` sibling and renamed on completion,
        so an interrupted download never occupies the cache path.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        logger.info("Downloading %s -> %s", url, dest)

        try:
            if self._client is not None:
                self._stream_to(self._client, url, partial)
            else:
                with httpx.Client(
                    timeout=self._timeout, follow_redirects=True
                ) as client:
                    self._stream_to(client, url, partial)
            partial.replace(dest)
        except httpx.HTTPError as exc:
            partial.unlink(missing_ok=True)
            raise FetchError(url, str(exc) or type(exc).__name__) from exc
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise FetchError(url, f"cannot write {dest}: {exc}") from exc

        return dest

    @staticmethod
    def _stream_to(client: httpx.Client, url: str, path: Path) -> None:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with path.open("wb") as fh:
                for chunk in response.iter_bytes():
                    fh.write(chunk)
