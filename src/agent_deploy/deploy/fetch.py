"""Fetch utilities for downloading agent release artifacts to the local cache."""

from __future__ import annotations

import hashlib
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

import httpx
import structlog

from agent_deploy.core.exceptions import (
    DeploymentError,
    DownloadFailed,
    NetworkUnavailable,
    VerificationFailed,
)
from agent_deploy.deploy.models import ReleaseInfo

logger = structlog.get_logger()


def compute_file_sha256(file_path: Path) -> str:
    """Lowercase hex SHA256 of a file, read in chunks."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(8192), b""):
            hasher.update(block)
    return hasher.hexdigest()


def matches_release(path: Path, release: ReleaseInfo) -> bool:
    """True if ``path`` has the release's size and, when known, its SHA256."""
    try:
        if path.stat().st_size != release.size:
            return False
    except OSError:
        return False
    if release.sha256 and compute_file_sha256(path) != release.sha256:
        return False
    return True


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _write_stream_to_file(stream_iter: Iterable[bytes], tmp_file: Path, max_size_bytes: int) -> int:
    """Write streaming bytes to ``tmp_file`` with max-size enforcement.

    Returns number of bytes written. The partial file is removed on error.
    """
    bytes_written = 0
    try:
        with open(tmp_file, "wb") as f:
            for chunk in stream_iter:
                if not chunk:
                    continue
                bytes_written += len(chunk)
                if bytes_written > max_size_bytes:
                    raise VerificationFailed(
                        f"Artifact exceeds maximum allowed size of {max_size_bytes} bytes"
                    )
                f.write(chunk)
    except BaseException:
        _remove_quietly(tmp_file)
        raise
    return bytes_written


def _verify(tmp_file: Path, release: ReleaseInfo, bytes_written: int) -> None:
    """Raise VerificationFailed (and discard the file) on size or digest mismatch."""
    if bytes_written != release.size:
        _remove_quietly(tmp_file)
        raise VerificationFailed(
            f"Size mismatch for {release.asset_name}: expected={release.size} actual={bytes_written}"
        )
    if release.sha256:
        actual = compute_file_sha256(tmp_file)
        if actual != release.sha256:
            _remove_quietly(tmp_file)
            raise VerificationFailed(
                f"SHA256 mismatch for {release.asset_name}: expected={release.sha256} actual={actual}"
            )


@dataclass(frozen=True)
class FetchOutcome:
    path: Path
    cached: bool
    bytes_downloaded: int = 0


class ArtifactFetcher:
    """Downloads a release artifact into the cache directory, verifying it first.

    Only verified files are ever moved into the cache; a cached file whose
    size (and digest, if known) matches is reused without network access.
    """

    def __init__(
        self,
        *,
        max_size_bytes: int = 512 * 1024 * 1024,
        total_timeout_sec: float = 600.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_size_bytes = max_size_bytes
        self.total_timeout_sec = total_timeout_sec
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=httpx.Timeout(60.0, connect=15.0), follow_redirects=True)
        )
        self._sleep = sleep

    @staticmethod
    def cache_path(release: ReleaseInfo, cache_dir: Path) -> Path:
        return Path(cache_dir) / release.asset_name

    def fetch(self, release: ReleaseInfo, cache_dir: Path, force: bool = False) -> FetchOutcome:
        dest_path = self.cache_path(release, cache_dir)
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadFailed(f"Cannot create cache directory {dest_path.parent}: {e}") from e

        if dest_path.exists():
            if force:
                logger.info("Force refresh - deleting cached artifact", cache_file=str(dest_path))
                _remove_quietly(dest_path)
            elif matches_release(dest_path, release):
                logger.info("Cache validated - using cached artifact", cache_file=str(dest_path))
                return FetchOutcome(path=dest_path, cached=True)
            else:
                logger.warning("Cached artifact does not match release - re-downloading", cache_file=str(dest_path))
                _remove_quietly(dest_path)

        bytes_written = self._download(release, dest_path)
        return FetchOutcome(path=dest_path, cached=False, bytes_downloaded=bytes_written)

    def _download(self, release: ReleaseInfo, dest_path: Path) -> int:
        tmp_file = dest_path.with_name(dest_path.name + ".downloading")
        start = time.monotonic()
        attempt = 0
        last_error: Optional[Exception] = None
        network_only = True

        while attempt < self.max_retries and (time.monotonic() - start) < self.total_timeout_sec:
            attempt += 1
            try:
                logger.info("Downloading artifact", url=release.download_url, dest=str(dest_path), attempt=attempt)
                with self._client_factory() as client:
                    with client.stream("GET", release.download_url) as resp:
                        resp.raise_for_status()
                        bytes_written = _write_stream_to_file(resp.iter_bytes(), tmp_file, self.max_size_bytes)

                _verify(tmp_file, release, bytes_written)
                os.replace(tmp_file, dest_path)
                logger.info("Downloaded artifact", bytes=bytes_written, sha256_checked=release.sha256 is not None)
                return bytes_written
            except VerificationFailed:
                logger.error("Artifact verification failed", asset=release.asset_name)
                raise
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
            except (httpx.HTTPError, OSError) as e:
                last_error = e
                network_only = False

            _remove_quietly(tmp_file)
            elapsed = time.monotonic() - start
            remaining = self.total_timeout_sec - elapsed
            logger.warning(
                "Download attempt failed",
                attempt=attempt,
                error=str(last_error),
                remaining_time_sec=max(0.0, remaining),
            )
            if attempt >= self.max_retries or remaining <= 0:
                break
            self._sleep(min(self.backoff_base * (2 ** (attempt - 1)), max(0.0, remaining)))

        error_type: type[DeploymentError] = NetworkUnavailable if network_only and last_error else DownloadFailed
        raise error_type(f"Failed to download {release.asset_name} after {attempt} attempts: {last_error}")
