"""
Pytest configuration and fixtures for agent-deploy tests.
"""

import hashlib
from pathlib import Path
from typing import List, Optional

import pytest
import structlog
from structlog.contextvars import clear_contextvars

from agent_deploy.core.config import Settings
from agent_deploy.deploy.fetch import FetchOutcome
from agent_deploy.deploy.manager import DeploymentOrchestrator
from agent_deploy.deploy.models import DeploymentRequest, ReleaseInfo
from agent_deploy.host.platform import HostPlatform
from agent_deploy.host.privilege import PrivilegeBroker
from agent_deploy.service.backends import CommandResult, ServiceBackend
from agent_deploy.service.descriptors import ServiceSpec
from agent_deploy.utils.ports import PortProbe

PAYLOAD = b"\x7fELF fake velociraptor binary"
LABEL = "com.velocidex.velociraptor"


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Keep host AGENT_DEPLOY_* settings and bound log context out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("AGENT_DEPLOY_"):
            monkeypatch.delenv(key)
    clear_contextvars()
    yield
    clear_contextvars()
    structlog.reset_defaults()


def make_release(payload: bytes = PAYLOAD, with_sha: bool = True) -> ReleaseInfo:
    return ReleaseInfo(
        version="v0.7.1",
        asset_name="velociraptor-v0.7.1-linux-amd64",
        download_url="https://example.com/velociraptor-v0.7.1-linux-amd64",
        size=len(payload),
        sha256=hashlib.sha256(payload).hexdigest() if with_sha else None,
    )


class FakeBackend(ServiceBackend):
    """In-memory service manager; records every command."""

    name = "fake"

    def __init__(self, home: Path, load_ok: bool = True, unload_ok: bool = True, running: bool = True):
        super().__init__(home=home)
        self.load_ok = load_ok
        self.unload_ok = unload_ok
        self.running = running
        self.calls: List[tuple] = []

    def descriptor_path(self, label: str) -> Path:
        return self.home / "agents" / f"{label}.plist"

    def render(self, spec: ServiceSpec) -> bytes:
        return (" ".join(spec.program_arguments) + "\n").encode()

    def after_install(self, spec: ServiceSpec, path: Path) -> None:
        self.calls.append(("after_install", spec.label))

    def load(self, label: str, path: Path) -> CommandResult:
        self.calls.append(("load", label))
        return CommandResult(ok=self.load_ok, exit_code=0 if self.load_ok else 5, output="" if self.load_ok else "load refused")

    def unload(self, label: str, path: Path) -> CommandResult:
        self.calls.append(("unload", label))
        return CommandResult(ok=self.unload_ok, exit_code=0 if self.unload_ok else 3, output="" if self.unload_ok else "not loaded")

    def is_running(self, label: str) -> bool:
        return self.running


class FakeResolver:
    def __init__(self, release: Optional[ReleaseInfo] = None, error: Optional[Exception] = None):
        self.release = release or make_release()
        self.error = error
        self.calls = 0

    def resolve(self, host, version=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.release


class FakeFetcher:
    """Writes ``payload`` into the cache without touching the network."""

    def __init__(self, payload: bytes = PAYLOAD):
        self.payload = payload
        self.calls = 0

    def fetch(self, release: ReleaseInfo, cache_dir: Path, force: bool = False) -> FetchOutcome:
        self.calls += 1
        cache_dir.mkdir(parents=True, exist_ok=True)
        path = cache_dir / release.asset_name
        path.write_bytes(self.payload)
        return FetchOutcome(path=path, cached=False, bytes_downloaded=len(self.payload))


class FakeProbe(PortProbe):
    """PortProbe whose socket checks are answered from flags."""

    def __init__(self, listening: bool = True, available: bool = True, poll_attempts: int = 3):
        super().__init__(poll_interval=0.01, poll_attempts=poll_attempts, sleep=lambda _s: None)
        self.listening = listening
        self.available = available
        self.waited_on = []

    def is_available(self, binding) -> bool:
        return self.available

    def wait_until_listening(self, binding) -> bool:
        self.waited_on.append(binding)
        return self.listening


@pytest.fixture
def settings():
    return Settings(required_disk_space_mb=0, _env_file=None)


@pytest.fixture
def make_request(tmp_path: Path):
    def _make(**overrides) -> DeploymentRequest:
        fields = dict(
            install_path=tmp_path / "bin",
            data_path=tmp_path / "data",
            log_path=tmp_path / "logs",
            cache_path=tmp_path / "cache",
        )
        fields.update(overrides)
        return DeploymentRequest(**fields)

    return _make


@pytest.fixture
def backend(tmp_path: Path):
    return FakeBackend(home=tmp_path / "home")


@pytest.fixture
def broker():
    # Unprivileged, non-interactive: elevation is never granted
    return PrivilegeBroker(euid=lambda: 1000, interactive=lambda: False, sudo_path="")


@pytest.fixture
def make_orchestrator(settings, backend, broker):
    def _make(**components) -> DeploymentOrchestrator:
        parts = dict(
            host=HostPlatform(os="linux", arch="amd64"),
            resolver=FakeResolver(),
            fetcher=FakeFetcher(),
            broker=broker,
            probe=FakeProbe(),
            backend=backend,
        )
        parts.update(components)
        return DeploymentOrchestrator(settings, **parts)

    return _make
