"""Start/stop/health of the installed agent service."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import structlog

from agent_deploy.core.exceptions import StartupFailed
from agent_deploy.deploy.models import NetworkBinding
from agent_deploy.host.binary import AgentBinary
from agent_deploy.service.backends import ServiceBackend
from agent_deploy.utils.ports import PortProbe, is_listening

logger = structlog.get_logger()


@dataclass(frozen=True)
class StopOutcome:
    stopped: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ServiceStatus:
    label: str
    installed: bool
    running: bool
    descriptor_path: Path
    installed_version: Optional[str] = None
    gui_listening: Optional[bool] = None


class ServiceSupervisor:
    """Drives the host service manager for one service label."""

    def __init__(
        self,
        backend: ServiceBackend,
        label: str,
        probe: PortProbe,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.label = label
        self.probe = probe
        self._sleep = sleep

    @property
    def descriptor_path(self) -> Path:
        return self.backend.descriptor_path(self.label)

    def start(self, readiness: Optional[NetworkBinding]) -> None:
        """Load the descriptor and wait for ``readiness`` to accept connections.

        With no readiness binding (client mode binds no ports) the backend is
        polled for a running process instead. Raises StartupFailed if the
        service manager refuses or readiness is not reached in budget.
        """
        path = self.descriptor_path
        if not path.exists():
            raise StartupFailed(f"Service descriptor {path} is not installed")

        logger.info("Starting service", label=self.label, backend=self.backend.name)
        result = self.backend.load(self.label, path)
        if not result.ok:
            raise StartupFailed(f"{self.backend.name} load failed with status {result.exit_code}: {result.output}")

        if readiness is None:
            if not self._wait_until_running():
                raise StartupFailed(f"Service {self.label} was loaded but never reported running")
            logger.info("Service started", label=self.label)
            return

        if not self.probe.wait_until_listening(readiness):
            budget = self.probe.poll_attempts * self.probe.poll_interval
            raise StartupFailed(
                f"Service did not open {readiness} within {self.probe.poll_attempts} attempts (~{budget:.0f}s)",
                recovery_hint="Check the agent logs for startup errors",
            )
        logger.info("Service started", label=self.label, address=str(readiness))

    def _wait_until_running(self) -> bool:
        for attempt in range(1, self.probe.poll_attempts + 1):
            if self.backend.is_running(self.label):
                return True
            if attempt < self.probe.poll_attempts:
                self._sleep(self.probe.poll_interval)
        return False

    def stop(self) -> StopOutcome:
        """Unload the service. Failures are reported, never raised."""
        path = self.descriptor_path
        logger.info("Stopping service", label=self.label)
        result = self.backend.unload(self.label, path)
        if not result.ok:
            logger.warning("Service stop failed", label=self.label, exit_code=result.exit_code, output=result.output)
            return StopOutcome(stopped=False, error=result.output or f"exit status {result.exit_code}")
        logger.info("Service stopped", label=self.label)
        return StopOutcome(stopped=True)

    def restart(self, readiness: Optional[NetworkBinding], pause_sec: float = 1.0) -> None:
        self.stop()
        self._sleep(pause_sec)
        self.start(readiness)

    def is_running(self) -> bool:
        return self.backend.is_running(self.label)

    def status(self, binary_path: Optional[Path] = None, gui: Optional[NetworkBinding] = None) -> ServiceStatus:
        path = self.descriptor_path
        version = AgentBinary(binary_path).version() if binary_path else None
        listening = None
        if gui is not None:
            host = "127.0.0.1" if gui.is_wildcard else gui.address
            listening = is_listening(gui.port, host)
        return ServiceStatus(
            label=self.label,
            installed=path.exists(),
            running=self.is_running(),
            descriptor_path=path,
            installed_version=version,
            gui_listening=listening,
        )
