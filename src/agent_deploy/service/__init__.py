"""OS service descriptors and lifecycle control."""

from .installer import ServiceInstaller
from .supervisor import ServiceStatus, ServiceSupervisor, StopOutcome

__all__ = ["ServiceInstaller", "ServiceStatus", "ServiceSupervisor", "StopOutcome"]
