"""Release feed lookup: pick the agent release asset for this host."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

from agent_deploy.core.exceptions import DownloadFailed, NetworkUnavailable, ReleaseNotFound
from agent_deploy.deploy.models import ReleaseInfo
from agent_deploy.host.platform import HostPlatform

logger = structlog.get_logger()


class VersionResolver:
    """Resolves a ``ReleaseInfo`` from a GitHub-style releases API.

    ``feed_url`` is the repository API root, e.g.
    ``https://api.github.com/repos/Velocidex/velociraptor``.
    """

    def __init__(self, feed_url: str, *, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.feed_url = feed_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def resolve(self, host: HostPlatform, version: Optional[str] = None) -> ReleaseInfo:
        release = self._fetch_release(version)
        tag = release.get("tag_name") or release.get("name") or ""
        asset = self._select_asset(release.get("assets") or [], host)
        if asset is None:
            raise ReleaseNotFound(
                f"No {host.asset_suffix} binary found in release {tag or '(unnamed)'}",
                recovery_hint="Use --local-binary to install a binary you already have",
            )

        info = ReleaseInfo(
            version=tag,
            asset_name=asset["name"],
            download_url=asset["browser_download_url"],
            size=int(asset.get("size") or 0),
            sha256=_asset_sha256(asset),
        )
        logger.info(
            "Resolved release",
            version=info.version,
            asset=info.asset_name,
            size=info.size,
            has_sha256=info.sha256 is not None,
        )
        return info

    def _release_url(self, version: Optional[str]) -> str:
        if version:
            return f"{self.feed_url}/releases/tags/{version}"
        return f"{self.feed_url}/releases/latest"

    def _fetch_release(self, version: Optional[str]) -> Dict[str, Any]:
        url = self._release_url(version)
        logger.info("Querying release feed", url=url)
        try:
            if self._client is not None:
                resp = self._client.get(url, headers={"Accept": "application/vnd.github+json"})
            else:
                with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                    resp = client.get(url, headers={"Accept": "application/vnd.github+json"})
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise NetworkUnavailable(f"Release feed unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise DownloadFailed(f"Release feed request failed: {e}") from e

        if resp.status_code == 404:
            what = f"Release {version}" if version else "Latest release"
            raise ReleaseNotFound(f"{what} not found at {self.feed_url}")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DownloadFailed(f"Release feed returned HTTP {resp.status_code}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise DownloadFailed("Release feed returned invalid JSON") from e
        if not isinstance(data, dict):
            raise DownloadFailed("Release feed returned an unexpected document")
        return data

    @staticmethod
    def _select_asset(assets: List[Dict[str, Any]], host: HostPlatform) -> Optional[Dict[str, Any]]:
        """First asset matching os-arch; amd64 of the same OS as fallback."""
        candidates = [a for a in assets if a.get("name") and a.get("browser_download_url")]
        # Skip detached signatures and checksums published next to the binaries
        candidates = [a for a in candidates if not a["name"].endswith((".sig", ".sha256", ".asc"))]

        for asset in candidates:
            if host.asset_suffix in asset["name"]:
                return asset
        if host.arch != "amd64":
            fallback = f"{host.os}-amd64"
            for asset in candidates:
                if fallback in asset["name"]:
                    logger.warning("No native asset; falling back to amd64", asset=asset["name"])
                    return asset
        return None


def _asset_sha256(asset: Dict[str, Any]) -> Optional[str]:
    digest = asset.get("digest")
    if isinstance(digest, str) and digest.lower().startswith("sha256:"):
        return digest
    return None
