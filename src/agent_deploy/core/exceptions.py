"""Custom exceptions for agent deployment."""

from typing import Optional


class DeploymentError(Exception):
    """Base exception for all deployment errors.

    Every error carries a stable ``kind`` used by callers to branch on the
    failure, a human readable message and an optional recovery hint.
    """

    kind = "DeploymentError"
    recoverable = False
    default_hint: Optional[str] = "Check the logs for more details"

    def __init__(self, message: str, recovery_hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.recovery_hint = recovery_hint if recovery_hint is not None else self.default_hint

    def to_info(self):
        """Return the structured form attached to step statuses and results."""
        from agent_deploy.deploy.models import DeploymentErrorInfo

        return DeploymentErrorInfo(
            kind=self.kind,
            message=self.message,
            recovery_hint=self.recovery_hint,
        )


class ReleaseNotFound(DeploymentError):
    """No release (or no asset for this platform) in the release feed."""

    kind = "ReleaseNotFound"


class DownloadFailed(DeploymentError):
    """Artifact download failed."""

    kind = "DownloadFailed"


class VerificationFailed(DeploymentError):
    """Downloaded artifact did not match the expected size or digest."""

    kind = "VerificationFailed"
    default_hint = "The download may be corrupted or tampered with; retry from a trusted network"


class PermissionDenied(DeploymentError):
    kind = "PermissionDenied"
    recoverable = True
    default_hint = "Try running with administrator privileges"


class PortConflict(DeploymentError):
    kind = "PortConflict"
    default_hint = "Choose different port numbers for frontend, GUI, and API"


class ConfigGenerationFailed(DeploymentError):
    kind = "ConfigGenerationFailed"


class ServiceInstallFailed(DeploymentError):
    kind = "ServiceInstallFailed"


class StartupFailed(DeploymentError):
    kind = "StartupFailed"


class NetworkUnavailable(DeploymentError):
    kind = "NetworkUnavailable"
    recoverable = True
    default_hint = "Check your network connection and try again"


class InsufficientDiskSpace(DeploymentError):
    kind = "InsufficientDiskSpace"
    recoverable = True
    default_hint = "Free up disk space and try again"


class Cancelled(DeploymentError):
    kind = "Cancelled"
    default_hint = None


class InvalidTransition(Exception):
    """A step status change that would move a step backwards."""
