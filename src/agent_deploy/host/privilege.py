"""Privilege checks: install path elevation and low-port refusal."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

import structlog

from agent_deploy.core.exceptions import PermissionDenied
from agent_deploy.host.platform import nearest_existing_path

logger = structlog.get_logger()


@dataclass(frozen=True)
class PrivilegeGrant:
    """Outcome of a privilege check.

    ``command_prefix`` is prepended to commands that touch protected paths,
    e.g. ``("sudo",)`` after a successful interactive elevation.
    """

    elevated: bool
    command_prefix: Tuple[str, ...] = ()
    reason: str = ""


def _current_euid() -> int:
    geteuid = getattr(os, "geteuid", None)
    return geteuid() if geteuid is not None else -1


class PrivilegeBroker:
    """Decides whether the current context may write the install path and bind low ports.

    Prompts for elevation at most once until ``reset`` is called.
    """

    def __init__(
        self,
        *,
        euid: Optional[Callable[[], int]] = None,
        interactive: Optional[Callable[[], bool]] = None,
        sudo_path: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._euid = euid or _current_euid
        self._interactive = interactive or (lambda: sys.stdin.isatty())
        self._sudo_path = sudo_path if sudo_path is not None else shutil.which("sudo")
        self._runner = runner
        self._prompt_result: Optional[bool] = None

    def is_root(self) -> bool:
        return self._euid() == 0

    def can_write(self, install_path: Path) -> bool:
        return os.access(nearest_existing_path(install_path), os.W_OK)

    def requires_elevation(self, install_path: Path) -> bool:
        if self.is_root():
            return False
        return not self.can_write(install_path)

    def check_ports(self, ports: Sequence[int]) -> None:
        """Raise PermissionDenied if a non-root user configured ports below 1024.

        The service runs as a per-user launchd agent or systemd user unit, so
        a sudo grant for the installer would not let it bind them.
        """
        if not ports or self.is_root():
            return
        listed = ", ".join(str(port) for port in sorted(set(ports)))
        raise PermissionDenied(
            f"Port {listed} is below 1024 and cannot be bound by a user-level service",
            recovery_hint=f"Choose ports 1024 or above instead of {listed}, or run agent-deploy as root",
        )

    def acquire(self, install_path: Path) -> PrivilegeGrant:
        """Return a grant for writing ``install_path`` or raise PermissionDenied."""
        if not self.requires_elevation(install_path):
            return PrivilegeGrant(elevated=False, reason="sufficient rights")

        reason = f"{install_path} not writable"
        logger.info("Elevation required", reason=reason, install_path=str(install_path))

        if self._prompt_result is None:
            self._prompt_result = self._prompt()
        if not self._prompt_result:
            raise PermissionDenied(f"Administrator access required ({reason}) but elevation was not granted")

        return PrivilegeGrant(elevated=True, command_prefix=("sudo",), reason=reason)

    def reset(self) -> None:
        """Forget the last prompt outcome; the next ``acquire`` asks again."""
        self._prompt_result = None

    def _prompt(self) -> bool:
        if not self._sudo_path:
            logger.warning("sudo not available; cannot elevate")
            return False
        if not self._interactive():
            logger.warning("Non-interactive session; cannot prompt for elevation")
            return False
        try:
            proc = self._runner([self._sudo_path, "-v"], check=False)
        except OSError as e:
            logger.warning("Elevation prompt failed", error=str(e))
            return False
        granted = proc.returncode == 0
        logger.info("Elevation prompt finished", granted=granted)
        return granted
