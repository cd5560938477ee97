"""Port availability probing, before and after the service starts."""

import socket
import time
from typing import Callable, List

import structlog

from agent_deploy.core.exceptions import PortConflict
from agent_deploy.deploy.models import DeploymentRequest, NetworkBinding

logger = structlog.get_logger()


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a port is available for binding."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


def is_listening(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """Check if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class PortProbe:
    """Bind/connect checks against the request's three network bindings."""

    def __init__(
        self,
        *,
        poll_interval: float = 2.0,
        poll_attempts: int = 15,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._sleep = sleep

    def is_available(self, binding: NetworkBinding) -> bool:
        return is_port_free(binding.port, binding.address)

    def check_conflicts(self, request: DeploymentRequest) -> None:
        """Fail fast when two configured ports are equal."""
        conflicts = request.port_conflicts()
        if conflicts:
            detail = ", ".join(f"{a} and {b} both use {port}" for a, b, port in conflicts)
            raise PortConflict(f"All ports must be different: {detail}")

    def unavailable(self, request: DeploymentRequest) -> List[str]:
        """Names of bindings whose port is already taken; logged, not fatal."""
        busy = []
        for name, binding in request.bindings.items():
            if not self.is_available(binding):
                logger.warning("Configured port already in use", binding=name, address=str(binding))
                busy.append(name)
        return busy

    def wait_until_listening(self, binding: NetworkBinding) -> bool:
        """Poll until the service accepts connections on ``binding``.

        Returns False once ``poll_attempts`` polls have failed.
        """
        host = "127.0.0.1" if binding.is_wildcard else binding.address
        for attempt in range(1, self.poll_attempts + 1):
            if is_listening(binding.port, host):
                logger.info("Service port is listening", address=str(binding), attempt=attempt)
                return True
            if attempt < self.poll_attempts:
                self._sleep(self.poll_interval)
        logger.warning(
            "Service port never opened",
            address=str(binding),
            attempts=self.poll_attempts,
            interval_sec=self.poll_interval,
        )
        return False
