"""CLI entrypoints (agent-deploy deploy|start|stop|restart|status|version)."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import ValidationError

from agent_deploy import __version__
from agent_deploy.core.config import Settings
from agent_deploy.core.exceptions import DeploymentError
from agent_deploy.deploy.manager import DeploymentOrchestrator
from agent_deploy.deploy.models import (
    DeploymentMode,
    DeploymentRequest,
    LogLevel,
    NetworkBinding,
    StepState,
    StepStatus,
)
from agent_deploy.host.binary import AgentBinary
from agent_deploy.host.platform import HostPlatform, default_paths
from agent_deploy.service.backends import backend_for
from agent_deploy.service.supervisor import ServiceSupervisor
from agent_deploy.utils.logging import setup_logging
from agent_deploy.utils.metrics import write_metrics
from agent_deploy.utils.ports import PortProbe

logger = structlog.get_logger()

STATE_MARKS = {
    StepState.IN_PROGRESS: "..",
    StepState.COMPLETED: "ok",
    StepState.FAILED: "!!",
    StepState.SKIPPED: "--",
}


def _add_binding_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mode", choices=[m.value for m in DeploymentMode], default=DeploymentMode.STANDALONE.value)
    parser.add_argument("--gui-address", default="127.0.0.1")
    parser.add_argument("--gui-port", type=int, default=8889)


def _add_path_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--install-path", type=Path, help="Directory holding the agent binary")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-deploy", description="Deploy and manage the local agent service")
    sub = parser.add_subparsers(dest="cmd")

    cmd_deploy = sub.add_parser("deploy", help="Install the agent and register it as a service")
    _add_binding_args(cmd_deploy)
    _add_path_args(cmd_deploy)
    cmd_deploy.add_argument("--data-path", type=Path)
    cmd_deploy.add_argument("--log-path", type=Path)
    cmd_deploy.add_argument("--cache-path", type=Path)
    cmd_deploy.add_argument("--frontend-address", default="0.0.0.0")
    cmd_deploy.add_argument("--frontend-port", type=int, default=8000)
    cmd_deploy.add_argument("--api-address", default="127.0.0.1")
    cmd_deploy.add_argument("--api-port", type=int, default=8001)
    cmd_deploy.add_argument("--organization", default="VelociraptorOrg")
    cmd_deploy.add_argument("--admin-username", default="admin")
    cmd_deploy.add_argument("--agent-log-level", choices=[lvl.value for lvl in LogLevel], default=LogLevel.INFO.value)
    cmd_deploy.add_argument("--version", dest="release_version", help="Release tag to install (default: latest)")
    cmd_deploy.add_argument("--local-binary", type=Path, help="Install this binary instead of downloading")
    cmd_deploy.add_argument("--force", action="store_true", help="Reinstall even if the binary is current")
    cmd_deploy.add_argument("--no-start", action="store_true", help="Install the service without starting it")
    cmd_deploy.add_argument("--launch-at-login", action="store_true")
    cmd_deploy.add_argument(
        "--emergency",
        action="store_true",
        help="Standalone deployment under ~/EmergencyVelociraptor with a generated admin password",
    )
    cmd_deploy.add_argument("--json", action="store_true", help="Print the deployment result as JSON")

    for name, help_text in (("start", "Start the installed service"), ("restart", "Restart the service")):
        cmd = sub.add_parser(name, help=help_text)
        _add_binding_args(cmd)

    sub.add_parser("stop", help="Stop the service")

    cmd_status = sub.add_parser("status", help="Show service status")
    _add_binding_args(cmd_status)
    _add_path_args(cmd_status)
    cmd_status.add_argument("--json", action="store_true")

    cmd_version = sub.add_parser("version", help="Show tool and installed agent versions")
    _add_path_args(cmd_version)

    return parser


def build_request(args: argparse.Namespace) -> DeploymentRequest:
    """Translate ``deploy`` arguments into a request; unset paths use OS defaults."""
    if args.emergency:
        overrides = {}
        if args.install_path:
            overrides["install_path"] = args.install_path
        if args.release_version:
            overrides["version"] = args.release_version
        if args.local_binary:
            overrides["local_binary_path"] = args.local_binary
        return DeploymentRequest.emergency(force=args.force, **overrides)

    defaults = default_paths()
    return DeploymentRequest(
        mode=DeploymentMode(args.mode),
        install_path=args.install_path or defaults["install"],
        data_path=args.data_path or defaults["data"],
        log_path=args.log_path or defaults["logs"],
        cache_path=args.cache_path or defaults["cache"],
        frontend=NetworkBinding(address=args.frontend_address, port=args.frontend_port),
        gui=NetworkBinding(address=args.gui_address, port=args.gui_port),
        api=NetworkBinding(address=args.api_address, port=args.api_port),
        enable_service=not args.no_start,
        force=args.force,
        organization=args.organization,
        admin_username=args.admin_username,
        log_level=LogLevel(args.agent_log_level),
        version=args.release_version,
        local_binary_path=args.local_binary,
        launch_at_login=args.launch_at_login,
    )


def _print_step(status: StepStatus) -> None:
    mark = STATE_MARKS.get(status.state)
    if mark is None:
        return
    line = f"[{mark}] {status.name}"
    if status.reason:
        line += f": {status.reason}"
    print(line, flush=True)


def _readiness(args: argparse.Namespace) -> Optional[NetworkBinding]:
    if args.mode == DeploymentMode.CLIENT.value:
        return None
    return NetworkBinding(address=args.gui_address, port=args.gui_port)


def _supervisor(settings: Settings) -> ServiceSupervisor:
    probe = PortProbe(
        poll_interval=settings.readiness_poll_interval_sec,
        poll_attempts=settings.readiness_poll_attempts,
    )
    return ServiceSupervisor(backend_for(HostPlatform.current()), settings.service_label, probe)


def _binary_path(args: argparse.Namespace, settings: Settings) -> Path:
    install_dir = args.install_path or default_paths()["install"]
    return Path(install_dir).expanduser() / settings.binary_name


def cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    try:
        request = build_request(args)
    except ValidationError as e:
        print(f"ERROR: invalid deployment request:\n{e}", file=sys.stderr)
        return 1

    if request.admin_password is not None:
        # Shown once; only a salted hash reaches the config file
        print(
            f"Admin login: {request.admin_username} / {request.admin_password.get_secret_value()}",
            file=sys.stderr,
        )

    orchestrator = DeploymentOrchestrator(settings)
    if not args.json:
        orchestrator.subscribe(_print_step)
    result = orchestrator.deploy(request)

    if settings.metrics_textfile:
        write_metrics(settings.metrics_textfile)

    if args.json:
        print(result.model_dump_json(indent=2))
    elif result.success:
        print(f"Deployed {result.installed_version or 'agent'} to {result.binary_path}")
        print(f"Configuration: {result.config_path}")
        print(f"Service descriptor: {result.descriptor_path}")
    else:
        err = result.error
        print(f"ERROR: {err.kind}: {err.message}", file=sys.stderr)
        if err.recovery_hint:
            print(f"Hint: {err.recovery_hint}", file=sys.stderr)
    return 0 if result.success else 1


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    _supervisor(settings).start(_readiness(args))
    print("Service started")
    return 0


def cmd_restart(args: argparse.Namespace, settings: Settings) -> int:
    _supervisor(settings).restart(_readiness(args))
    print("Service restarted")
    return 0


def cmd_stop(args: argparse.Namespace, settings: Settings) -> int:
    outcome = _supervisor(settings).stop()
    if not outcome.stopped:
        print(f"ERROR: stop failed: {outcome.error}", file=sys.stderr)
        return 1
    print("Service stopped")
    return 0


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    status = _supervisor(settings).status(binary_path=_binary_path(args, settings), gui=_readiness(args))
    if args.json:
        print(
            json.dumps(
                {
                    "label": status.label,
                    "installed": status.installed,
                    "running": status.running,
                    "descriptor_path": str(status.descriptor_path),
                    "installed_version": status.installed_version,
                    "gui_listening": status.gui_listening,
                },
                indent=2,
            )
        )
    else:
        print(f"Service:   {status.label}")
        print(f"Installed: {'yes' if status.installed else 'no'} ({status.descriptor_path})")
        print(f"Running:   {'yes' if status.running else 'no'}")
        print(f"Version:   {status.installed_version or 'unknown'}")
        if status.gui_listening is not None:
            print(f"GUI:       {'listening' if status.gui_listening else 'not listening'}")
    return 0 if status.running else 1


def cmd_version(args: argparse.Namespace, settings: Settings) -> int:
    print(f"agent-deploy {__version__}")
    installed = AgentBinary(_binary_path(args, settings)).version()
    print(f"{settings.binary_name} {installed or 'not installed'}")
    return 0


COMMANDS = {
    "deploy": cmd_deploy,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "version": cmd_version,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1

    settings = Settings()
    setup_logging(settings.log_level, settings.log_format)

    try:
        return COMMANDS[args.cmd](args, settings)
    except DeploymentError as e:
        logger.error("Command failed", command=args.cmd, kind=e.kind, error=e.message)
        print(f"ERROR: {e.kind}: {e.message}", file=sys.stderr)
        if e.recovery_hint:
            print(f"Hint: {e.recovery_hint}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
