"""Logging configuration utilities."""

import logging
import sys
from pathlib import PurePath
from typing import Optional

import structlog
from pydantic import SecretStr
from structlog.contextvars import bind_contextvars, unbind_contextvars

# Fields that may carry the admin credential or agent key material
SENSITIVE_KEYS = {
    "password",
    "admin_password",
    "password_hash",
    "password_salt",
    "nonce",
    "private_key",
    "ca_private_key",
    "client_private_key",
    "api_key",
    "authorization",
}

DEPLOYMENT_CONTEXT_KEYS = ("serviceLabel", "deploymentMode", "releaseVersion")


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact credential fields and any pydantic SecretStr value."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS or isinstance(value, SecretStr):
            event_dict[key] = "[REDACTED]"
    return event_dict


def _render_paths(_, __, event_dict: dict) -> dict:
    """Log filesystem paths as plain strings rather than ``PosixPath(...)`` reprs."""
    for key, value in list(event_dict.items()):
        if isinstance(value, PurePath):
            event_dict[key] = str(value)
    return event_dict


def _stderr_logger_factory(*_args) -> structlog.PrintLogger:
    # Resolved per logger so a replaced sys.stderr is picked up
    return structlog.PrintLogger(file=sys.stderr)


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog for the CLI.

    Everything goes to stderr; stdout is reserved for command output such
    as ``deploy --json``.
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        _render_paths,
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger_factory,
        cache_logger_on_first_use=False,
    )


def start_deployment_context(service_label: str, mode: str) -> None:
    """Drop fields left over from an earlier run and bind this run's label and mode."""
    unbind_contextvars(*DEPLOYMENT_CONTEXT_KEYS)
    bind_contextvars(serviceLabel=service_label, deploymentMode=mode)


def bind_deployment_context(service_label: Optional[str] = None, version: Optional[str] = None) -> None:
    """Bind correlation fields for deployment logs using contextvars."""
    if service_label:
        bind_contextvars(serviceLabel=service_label)
    if version:
        bind_contextvars(releaseVersion=version)
