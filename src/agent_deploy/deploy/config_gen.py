"""Render a deployment request into the agent's YAML configuration."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Any, Dict, List

import structlog
import yaml

from agent_deploy.core.exceptions import ConfigGenerationFailed
from agent_deploy.deploy.models import DeploymentMode, DeploymentRequest

logger = structlog.get_logger()

CONFIG_FILE_NAME = "server.config.yaml"
DIR_MODE = 0o750
CONFIG_MODE = 0o640


def _p(path: Path) -> str:
    return str(Path(path).expanduser())


def initial_users(request: DeploymentRequest) -> List[Dict[str, str]]:
    """GUI bootstrap users; a password is stored only as a salted SHA256."""
    user = {"name": request.admin_username}
    if request.admin_password is not None:
        # Salt derives from the request so identical requests render identical bytes
        salt = hashlib.sha256(f"{request.organization}:{request.admin_username}".encode()).digest()
        password = request.admin_password.get_secret_value().encode()
        user["password_salt"] = salt.hex()
        user["password_hash"] = hashlib.sha256(salt + password).hexdigest()
    return [user]


class ConfigGenerator:
    """Builds the agent configuration document.

    Output depends only on the request and the binary path: no timestamps,
    sorted keys, so identical input always yields identical bytes.
    """

    def config_path(self, request: DeploymentRequest) -> Path:
        return Path(request.data_path).expanduser() / "config" / CONFIG_FILE_NAME

    def build(self, request: DeploymentRequest) -> Dict[str, Any]:
        frontend = request.frontend
        server_host = "localhost" if frontend.is_wildcard else frontend.address
        doc: Dict[str, Any] = {
            "version": {"name": request.organization},
            "Client": {
                "server_urls": [f"https://{server_host}:{frontend.port}/"],
                "nonce": "",
                "writeback_darwin": "/etc/velociraptor/velociraptor.writeback.yaml",
                "writeback_linux": "/etc/velociraptor/velociraptor.writeback.yaml",
            },
        }
        if request.mode == DeploymentMode.CLIENT:
            return doc

        doc.update(
            {
                "Frontend": {
                    "bind_address": frontend.address,
                    "bind_port": frontend.port,
                },
                "GUI": {
                    "bind_address": request.gui.address,
                    "bind_port": request.gui.port,
                    "initial_users": initial_users(request),
                },
                "API": {
                    "bind_address": request.api.address,
                    "bind_port": request.api.port,
                },
                "Datastore": {
                    "implementation": "FileBaseDataStore",
                    "location": _p(request.data_path),
                    "filestore_directory": _p(request.data_path),
                },
                "Logging": {
                    "output_directory": _p(request.log_path),
                    "separate_logs_per_component": True,
                    "level": request.log_level.value,
                    "debug": request.log_level.value == "DEBUG",
                },
            }
        )
        return doc

    def render(self, request: DeploymentRequest, binary_path: Path) -> str:
        header = (
            "# Agent configuration generated by agent-deploy\n"
            f"# Deployment mode: {request.mode.value}\n"
            f"# Binary: {_p(binary_path)}\n"
        )
        body = yaml.safe_dump(self.build(request), sort_keys=True, default_flow_style=False)
        return header + body

    def generate(self, request: DeploymentRequest, binary_path: Path) -> Path:
        """Create the data/log/cache directories and write the configuration file."""
        config_path = self.config_path(request)
        directories = [
            Path(request.data_path).expanduser(),
            Path(request.log_path).expanduser(),
            Path(request.cache_path).expanduser(),
            config_path.parent,
        ]
        try:
            for directory in directories:
                if not directory.exists():
                    directory.mkdir(parents=True, mode=DIR_MODE)
                    logger.info("Created directory", path=str(directory))
        except OSError as e:
            raise ConfigGenerationFailed(f"Cannot create directory {directory}: {e}") from e

        content = self.render(request, binary_path)
        tmp = config_path.with_name(config_path.name + ".tmp")
        try:
            tmp.write_text(content, encoding="utf-8")
            os.chmod(tmp, CONFIG_MODE)
            os.replace(tmp, config_path)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise ConfigGenerationFailed(f"Cannot write {config_path}: {e}") from e

        logger.info("Configuration generated", path=str(config_path), mode=request.mode.value)
        return config_path
