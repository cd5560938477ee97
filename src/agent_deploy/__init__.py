"""Agent Deploy - install and supervise a local collection agent as a background service."""

__version__ = "0.1.0"
__author__ = "Agent Deploy Team"

from agent_deploy.core.config import Settings
from agent_deploy.deploy.manager import DeploymentOrchestrator
from agent_deploy.deploy.models import DeploymentRequest, DeploymentResult

__all__ = ["Settings", "DeploymentOrchestrator", "DeploymentRequest", "DeploymentResult", "__version__"]
