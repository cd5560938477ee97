"""Models for agent deployments."""

from __future__ import annotations

import ipaddress
import secrets
from enum import Enum
from itertools import combinations
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from agent_deploy.host.platform import HostPlatform, default_paths

PRIVILEGED_PORT_THRESHOLD = 1024
EMERGENCY_DIR_NAME = "EmergencyVelociraptor"


class DeploymentMode(str, Enum):
    SERVER = "server"
    STANDALONE = "standalone"
    CLIENT = "client"


class LogLevel(str, Enum):
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


class NetworkBinding(BaseModel):
    """Address and port one of the agent's listeners binds to."""

    model_config = ConfigDict(frozen=True)

    address: str = "127.0.0.1"
    port: int = Field(..., ge=1, le=65535)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        try:
            ipaddress.IPv4Address(v)
        except ValueError:
            raise ValueError(f"{v!r} is not a valid IPv4 address")
        return v

    @property
    def is_privileged(self) -> bool:
        return self.port < PRIVILEGED_PORT_THRESHOLD

    @property
    def is_wildcard(self) -> bool:
        return self.address == "0.0.0.0"

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


def _default_path(key: str):
    return lambda: default_paths()[key]


class DeploymentRequest(BaseModel):
    """Everything needed to deploy one local installation.

    Read-only once constructed. The three ports must differ, but that is
    not enforced here: the pre-flight step reports ``port_conflicts`` as a
    ``PortConflict``.
    """

    model_config = ConfigDict(frozen=True)

    mode: DeploymentMode = DeploymentMode.STANDALONE
    install_path: Path = Field(default_factory=_default_path("install"))
    data_path: Path = Field(default_factory=_default_path("data"))
    log_path: Path = Field(default_factory=_default_path("logs"))
    cache_path: Path = Field(default_factory=_default_path("cache"))
    frontend: NetworkBinding = NetworkBinding(address="0.0.0.0", port=8000)
    gui: NetworkBinding = NetworkBinding(address="127.0.0.1", port=8889)
    api: NetworkBinding = NetworkBinding(address="127.0.0.1", port=8001)
    enable_service: bool = True
    force: bool = False
    organization: str = Field("VelociraptorOrg", min_length=1)
    admin_username: str = Field("admin", min_length=3, pattern=r"^[A-Za-z0-9_]+$")
    admin_password: Optional[SecretStr] = None
    log_level: LogLevel = LogLevel.INFO
    version: Optional[str] = None
    local_binary_path: Optional[Path] = None
    launch_at_login: bool = False

    @property
    def bindings(self) -> Dict[str, NetworkBinding]:
        return {"frontend": self.frontend, "gui": self.gui, "api": self.api}

    @property
    def privileged_ports(self) -> List[int]:
        """Ports below 1024 the agent would bind. A client binds none."""
        if self.mode == DeploymentMode.CLIENT:
            return []
        return [b.port for b in self.bindings.values() if b.is_privileged]

    @property
    def requires_privileged_port(self) -> bool:
        return bool(self.privileged_ports)

    @property
    def offline(self) -> bool:
        return self.local_binary_path is not None

    def port_conflicts(self) -> List[Tuple[str, str, int]]:
        """Return ``(name_a, name_b, port)`` for every pair sharing a port."""
        conflicts = []
        for (name_a, a), (name_b, b) in combinations(self.bindings.items(), 2):
            if a.port == b.port:
                conflicts.append((name_a, name_b, a.port))
        return conflicts

    @classmethod
    def emergency(
        cls, home: Optional[Path] = None, host: Optional[HostPlatform] = None, **overrides
    ) -> "DeploymentRequest":
        """One-shot standalone preset for incident response.

        Datastore and logs live under ``~/EmergencyVelociraptor`` and the admin
        account gets a freshly generated password.
        """
        home = Path(home) if home is not None else Path.home()
        root = home / EMERGENCY_DIR_NAME
        fields = dict(
            mode=DeploymentMode.STANDALONE,
            install_path=default_paths(host, home=home)["install"],
            data_path=root,
            log_path=root / "logs",
            cache_path=root / "cache",
            admin_username="admin",
            admin_password=SecretStr(f"emergency_{secrets.token_urlsafe(12)}"),
        )
        fields.update(overrides)
        return cls(**fields)


class ReleaseInfo(BaseModel):
    """A resolved release asset. Immutable once resolved."""

    model_config = ConfigDict(frozen=True)

    version: str
    asset_name: str
    download_url: str
    size: int = Field(..., ge=0)
    sha256: Optional[str] = None

    @field_validator("sha256")
    @classmethod
    def normalize_sha256(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        if v.startswith("sha256:"):
            v = v[len("sha256:"):]
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return v


class StepState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED)


ALLOWED_TRANSITIONS = {
    StepState.PENDING: {StepState.IN_PROGRESS, StepState.SKIPPED, StepState.FAILED},
    StepState.IN_PROGRESS: {StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED},
    StepState.COMPLETED: set(),
    StepState.FAILED: set(),
    StepState.SKIPPED: set(),
}


class DeploymentErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    recovery_hint: Optional[str] = None


class StepStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    state: StepState = StepState.PENDING
    reason: Optional[str] = None
    error: Optional[DeploymentErrorInfo] = None


class PipelineState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeploymentResult(BaseModel):
    """Outcome of one orchestrator invocation. Owned by the caller."""

    model_config = ConfigDict(frozen=True)

    success: bool
    binary_path: Optional[Path] = None
    config_path: Optional[Path] = None
    descriptor_path: Optional[Path] = None
    steps: Tuple[StepStatus, ...] = ()
    error: Optional[DeploymentErrorInfo] = None
    installed_version: Optional[str] = None
    durations_ms: Dict[str, float] = Field(default_factory=dict)

    def step(self, name: str) -> StepStatus:
        for status in self.steps:
            if status.name == name:
                return status
        raise KeyError(name)

    def state_of(self, name: str) -> StepState:
        return self.step(name).state
