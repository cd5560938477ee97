"""Deployment pipeline: release lookup, artifact fetch, install and orchestration."""

from .models import (
    DeploymentMode,
    DeploymentRequest,
    DeploymentResult,
    NetworkBinding,
    ReleaseInfo,
    StepState,
    StepStatus,
)
from .manager import DeploymentOrchestrator

__all__ = [
    "DeploymentMode",
    "DeploymentRequest",
    "DeploymentResult",
    "NetworkBinding",
    "ReleaseInfo",
    "StepState",
    "StepStatus",
    "DeploymentOrchestrator",
]
