"""Writes the OS service descriptor that keeps the agent running."""

from __future__ import annotations

import os
from pathlib import Path

import structlog

from agent_deploy.core.exceptions import ServiceInstallFailed
from agent_deploy.deploy.models import DeploymentRequest
from agent_deploy.host.binary import AgentBinary
from agent_deploy.service.backends import ServiceBackend
from agent_deploy.service.descriptors import ServiceSpec

logger = structlog.get_logger()


class ServiceInstaller:
    """Installs or replaces the descriptor for a fixed service label.

    Reinstalling replaces rather than adds: an existing descriptor is
    unloaded and removed before the new one is written.
    """

    def __init__(self, backend: ServiceBackend, label: str):
        self.backend = backend
        self.label = label

    @property
    def descriptor_path(self) -> Path:
        return self.backend.descriptor_path(self.label)

    def build_spec(self, binary_path: Path, config_path: Path, request: DeploymentRequest) -> ServiceSpec:
        log_dir = Path(request.log_path).expanduser()
        return ServiceSpec(
            label=self.label,
            program_arguments=tuple(AgentBinary(binary_path).frontend_command(config_path)),
            working_directory=Path(request.data_path).expanduser(),
            stdout_path=log_dir / "velociraptor.log",
            stderr_path=log_dir / "velociraptor.error.log",
            run_at_load=request.launch_at_login,
        )

    def install(self, binary_path: Path, config_path: Path, request: DeploymentRequest) -> Path:
        spec = self.build_spec(binary_path, config_path, request)
        path = self.descriptor_path

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ServiceInstallFailed(f"Cannot create {path.parent}: {e}") from e

        if path.exists():
            result = self.backend.unload(self.label, path)
            if not result.ok:
                # Not loaded is the common case here
                logger.warning("Unload of existing service failed", label=self.label, output=result.output)
            try:
                path.unlink()
            except OSError as e:
                raise ServiceInstallFailed(f"Cannot remove existing descriptor {path}: {e}") from e
            logger.info("Removed existing service descriptor", path=str(path))

        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_bytes(self.backend.render(spec))
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise ServiceInstallFailed(f"Cannot write service descriptor {path}: {e}") from e

        self.backend.after_install(spec, path)
        logger.info("Service descriptor installed", path=str(path), backend=self.backend.name, label=self.label)
        return path
