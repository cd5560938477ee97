"""Binary installation and host prerequisite checks."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Sequence

import structlog

from agent_deploy.core.exceptions import (
    DeploymentError,
    InsufficientDiskSpace,
    PermissionDenied,
)
from agent_deploy.host.platform import nearest_existing_path

logger = structlog.get_logger()

BINARY_MODE = 0o755


def check_disk_space(path: Path, required_bytes: int) -> int:
    """Raise InsufficientDiskSpace unless the volume holding ``path`` has room.

    Returns the free byte count.
    """
    try:
        free = shutil.disk_usage(nearest_existing_path(path)).free
    except OSError as e:
        logger.warning("Could not determine free disk space", path=str(path), error=str(e))
        free = 0
    if free <= required_bytes:
        raise InsufficientDiskSpace(
            f"{free // (1024 * 1024)} MB free at {path}, {required_bytes // (1024 * 1024)} MB required"
        )
    logger.info("Disk space check passed", path=str(path), free_mb=free // (1024 * 1024))
    return free


class BinaryInstaller:
    """Copies a verified artifact into the install directory and marks it executable."""

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self._runner = runner

    def install(self, source: Path, install_dir: Path, binary_name: str, command_prefix: Sequence[str] = ()) -> Path:
        source = Path(source)
        target = Path(install_dir) / binary_name
        if not source.is_file():
            raise DeploymentError(f"Install source {source} does not exist")

        if command_prefix:
            self._install_elevated(source, target, command_prefix)
        else:
            self._install_direct(source, target)

        logger.info("Installed agent binary", path=str(target), elevated=bool(command_prefix))
        return target

    def _install_direct(self, source: Path, target: Path) -> None:
        tmp = target.with_name(f".{target.name}.installing")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, tmp)
            os.chmod(tmp, BINARY_MODE)
            os.replace(tmp, target)
        except PermissionError as e:
            raise PermissionDenied(f"Cannot write {target}: {e}") from e
        except OSError as e:
            raise DeploymentError(f"Failed to install binary to {target}: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink()

    def _install_elevated(self, source: Path, target: Path, prefix: Sequence[str]) -> None:
        commands = [
            [*prefix, "install", "-d", "-m", "0755", str(target.parent)],
            [*prefix, "install", "-m", "0755", str(source), str(target)],
        ]
        for cmd in commands:
            try:
                proc = self._runner(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False)
            except OSError as e:
                raise DeploymentError(f"Failed to run {cmd[0]}: {e}") from e
            if proc.returncode != 0:
                raise PermissionDenied(
                    f"Elevated install failed ({' '.join(cmd)}): {(proc.stderr or '').strip()}"
                )
