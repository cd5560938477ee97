"""Host service-manager backends (launchd on macOS, systemd user units on Linux)."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import structlog

from agent_deploy.core.exceptions import ServiceInstallFailed
from agent_deploy.host.platform import HostPlatform
from agent_deploy.service.descriptors import (
    ServiceSpec,
    render_launchd_plist,
    render_systemd_unit,
)

logger = structlog.get_logger()

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    exit_code: int
    output: str = ""


class ServiceBackend:
    """Base class; subclasses wrap one platform's service manager CLI."""

    name = "base"

    def __init__(self, home: Optional[Path] = None, runner: Runner = subprocess.run):
        self.home = home or Path.home()
        self._runner = runner

    def descriptor_path(self, label: str) -> Path:
        raise NotImplementedError

    def render(self, spec: ServiceSpec) -> bytes:
        raise NotImplementedError

    def after_install(self, spec: ServiceSpec, path: Path) -> None:
        """Hook run once a new descriptor is on disk."""

    def load(self, label: str, path: Path) -> CommandResult:
        raise NotImplementedError

    def unload(self, label: str, path: Path) -> CommandResult:
        raise NotImplementedError

    def is_running(self, label: str) -> bool:
        raise NotImplementedError

    def _run(self, cmd: List[str]) -> CommandResult:
        logger.debug("Running service manager command", command=" ".join(cmd))
        try:
            proc = self._runner(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, check=False)
        except OSError as e:
            logger.warning("Service manager command could not run", command=cmd[0], error=str(e))
            return CommandResult(ok=False, exit_code=-1, output=str(e))
        return CommandResult(ok=proc.returncode == 0, exit_code=proc.returncode, output=(proc.stdout or "").strip())


class LaunchdBackend(ServiceBackend):
    name = "launchd"
    launchctl = "/bin/launchctl"

    def descriptor_path(self, label: str) -> Path:
        return self.home / "Library" / "LaunchAgents" / f"{label}.plist"

    def render(self, spec: ServiceSpec) -> bytes:
        return render_launchd_plist(spec)

    def load(self, label: str, path: Path) -> CommandResult:
        return self._run([self.launchctl, "load", "-w", str(path)])

    def unload(self, label: str, path: Path) -> CommandResult:
        return self._run([self.launchctl, "unload", "-w", str(path)])

    def is_running(self, label: str) -> bool:
        result = self._run([self.launchctl, "list", label])
        # A loaded but exited job has no "PID" entry
        return result.ok and '"PID" =' in result.output


class SystemdUserBackend(ServiceBackend):
    name = "systemd"
    systemctl = "systemctl"

    def descriptor_path(self, label: str) -> Path:
        return self.home / ".config" / "systemd" / "user" / f"{label}.service"

    def render(self, spec: ServiceSpec) -> bytes:
        return render_systemd_unit(spec)

    def _unit(self, label: str) -> str:
        return f"{label}.service"

    def after_install(self, spec: ServiceSpec, path: Path) -> None:
        reload = self._run([self.systemctl, "--user", "daemon-reload"])
        if not reload.ok:
            logger.warning("systemd daemon-reload failed", output=reload.output)
        action = "enable" if spec.run_at_load else "disable"
        result = self._run([self.systemctl, "--user", action, self._unit(spec.label)])
        if not result.ok:
            logger.warning("systemd unit enable/disable failed", action=action, output=result.output)

    def load(self, label: str, path: Path) -> CommandResult:
        return self._run([self.systemctl, "--user", "start", self._unit(label)])

    def unload(self, label: str, path: Path) -> CommandResult:
        return self._run([self.systemctl, "--user", "stop", self._unit(label)])

    def is_running(self, label: str) -> bool:
        return self._run([self.systemctl, "--user", "is-active", "--quiet", self._unit(label)]).ok


def backend_for(host: HostPlatform, home: Optional[Path] = None, runner: Runner = subprocess.run) -> ServiceBackend:
    if host.os == "darwin":
        return LaunchdBackend(home=home, runner=runner)
    if host.os == "linux":
        return SystemdUserBackend(home=home, runner=runner)
    raise ServiceInstallFailed(
        f"No supported service manager for platform {host.os}",
        recovery_hint="Run the agent binary manually with 'frontend --config <path>'",
    )
