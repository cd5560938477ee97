"""Host platform detection and OS-conventional default locations."""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

APP_DIR_NAME = "Velociraptor"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
}

_OS_ALIASES = {
    "darwin": "darwin",
    "linux": "linux",
    "win32": "windows",
}


@dataclass(frozen=True)
class HostPlatform:
    """Operating system and CPU architecture in release-asset naming."""

    os: str
    arch: str

    @property
    def asset_suffix(self) -> str:
        return f"{self.os}-{self.arch}"

    @classmethod
    def current(cls) -> "HostPlatform":
        os_name = _OS_ALIASES.get(sys.platform, sys.platform)
        machine = platform.machine().lower()
        return cls(os=os_name, arch=_ARCH_ALIASES.get(machine, machine))


def default_paths(host: Optional[HostPlatform] = None, home: Optional[Path] = None) -> Dict[str, Path]:
    """Return install/data/logs/cache defaults for the host.

    macOS uses the per-user Library folders; everything else follows the
    XDG base directory layout.
    """
    host = host or HostPlatform.current()
    home = home or Path.home()

    if host.os == "darwin":
        return {
            "install": Path("/usr/local/bin"),
            "data": home / "Library" / "Application Support" / APP_DIR_NAME,
            "logs": home / "Library" / "Logs" / APP_DIR_NAME,
            "cache": home / "Library" / "Caches" / APP_DIR_NAME,
        }

    name = APP_DIR_NAME.lower()
    data_home = Path(os.getenv("XDG_DATA_HOME") or home / ".local" / "share")
    state_home = Path(os.getenv("XDG_STATE_HOME") or home / ".local" / "state")
    cache_home = Path(os.getenv("XDG_CACHE_HOME") or home / ".cache")
    return {
        "install": home / ".local" / "bin",
        "data": data_home / name,
        "logs": state_home / name / "logs",
        "cache": cache_home / name,
    }


def nearest_existing_path(path: Path) -> Path:
    """Closest ancestor of ``path`` (or ``path`` itself) that exists."""
    path = Path(path).expanduser()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path
