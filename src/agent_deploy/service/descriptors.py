"""Service descriptor rendering for launchd and systemd."""

import plistlib
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

DEFAULT_PATH_ENV = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"


@dataclass(frozen=True)
class ServiceSpec:
    """Platform-neutral description of the background service."""

    label: str
    program_arguments: Tuple[str, ...]
    working_directory: Path
    stdout_path: Path
    stderr_path: Path
    run_at_load: bool = False


def render_launchd_plist(spec: ServiceSpec) -> bytes:
    """LaunchAgent plist that restarts the agent unless it exits cleanly."""
    payload = {
        "Label": spec.label,
        "ProgramArguments": list(spec.program_arguments),
        "RunAtLoad": spec.run_at_load,
        "KeepAlive": {"SuccessfulExit": False},
        "StandardOutPath": str(spec.stdout_path),
        "StandardErrorPath": str(spec.stderr_path),
        "WorkingDirectory": str(spec.working_directory),
        "EnvironmentVariables": {"PATH": DEFAULT_PATH_ENV},
    }
    return plistlib.dumps(payload, fmt=plistlib.FMT_XML, sort_keys=True)


def render_systemd_unit(spec: ServiceSpec) -> bytes:
    exec_start = " ".join(shlex.quote(arg) for arg in spec.program_arguments)
    lines = [
        "[Unit]",
        f"Description=Agent service ({spec.label})",
        "After=network-online.target",
        "",
        "[Service]",
        "Type=simple",
        f"ExecStart={exec_start}",
        f"WorkingDirectory={spec.working_directory}",
        "Restart=on-failure",
        "RestartSec=5",
        f"Environment=PATH={DEFAULT_PATH_ENV}",
        f"StandardOutput=append:{spec.stdout_path}",
        f"StandardError=append:{spec.stderr_path}",
        "",
        "[Install]",
        "WantedBy=default.target",
        "",
    ]
    return "\n".join(lines).encode("utf-8")
