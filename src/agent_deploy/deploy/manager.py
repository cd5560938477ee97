"""Deployment orchestrator: runs the ordered install pipeline for one request."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from agent_deploy.core.config import Settings
from agent_deploy.core.exceptions import (
    Cancelled,
    ConfigGenerationFailed,
    DeploymentError,
    DownloadFailed,
    PermissionDenied,
    PortConflict,
    ReleaseNotFound,
    ServiceInstallFailed,
    StartupFailed,
)
from agent_deploy.deploy.config_gen import ConfigGenerator
from agent_deploy.deploy.fetch import ArtifactFetcher, compute_file_sha256, matches_release
from agent_deploy.deploy.install import BinaryInstaller, check_disk_space
from agent_deploy.deploy.models import (
    DeploymentMode,
    DeploymentRequest,
    DeploymentResult,
    PipelineState,
    ReleaseInfo,
    StepStatus,
)
from agent_deploy.deploy.pipeline import Stage, StageSkipped, StepListener, StepTracker
from agent_deploy.deploy.release import VersionResolver
from agent_deploy.host.binary import AgentBinary
from agent_deploy.host.platform import HostPlatform
from agent_deploy.host.privilege import PrivilegeBroker, PrivilegeGrant
from agent_deploy.service.backends import ServiceBackend, backend_for
from agent_deploy.service.installer import ServiceInstaller
from agent_deploy.service.supervisor import ServiceSupervisor
from agent_deploy.utils.logging import bind_deployment_context, start_deployment_context
from agent_deploy.utils.metrics import StepTimer
from agent_deploy.utils.ports import PortProbe

logger = structlog.get_logger()

STEP_NAMES = (
    "preflight",
    "prerequisites",
    "resolve",
    "fetch",
    "privileges",
    "install_binary",
    "configure",
    "install_service",
    "start_service",
)


@dataclass
class RunContext:
    """Mutable per-invocation state handed from one stage to the next."""

    request: DeploymentRequest
    release: Optional[ReleaseInfo] = None
    artifact_path: Optional[Path] = None
    grant: Optional[PrivilegeGrant] = None
    binary_path: Optional[Path] = None
    config_path: Optional[Path] = None
    descriptor_path: Optional[Path] = None
    already_installed: bool = False


class DeploymentOrchestrator:
    """Sequences the deployment of one local agent installation.

    Stages run in the caller's thread, strictly in ``STEP_NAMES`` order.
    The first failing stage halts the run; completed stages are left in
    place. Progress is pushed to ``subscribe`` listeners and can be polled
    with ``snapshot``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        host: Optional[HostPlatform] = None,
        resolver: Optional[VersionResolver] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        broker: Optional[PrivilegeBroker] = None,
        probe: Optional[PortProbe] = None,
        config_generator: Optional[ConfigGenerator] = None,
        binary_installer: Optional[BinaryInstaller] = None,
        backend: Optional[ServiceBackend] = None,
        service_installer: Optional[ServiceInstaller] = None,
        supervisor: Optional[ServiceSupervisor] = None,
    ):
        self.settings = settings or Settings()
        self.host = host or HostPlatform.current()
        self.resolver = resolver or VersionResolver(
            self.settings.release_feed_url, timeout=self.settings.http_timeout_sec
        )
        self.fetcher = fetcher or ArtifactFetcher(
            max_size_bytes=self.settings.max_artifact_size_bytes,
            total_timeout_sec=self.settings.download_timeout_sec,
            max_retries=self.settings.download_max_retries,
            backoff_base=self.settings.download_backoff_base,
        )
        self.broker = broker or PrivilegeBroker()
        self.probe = probe or PortProbe(
            poll_interval=self.settings.readiness_poll_interval_sec,
            poll_attempts=self.settings.readiness_poll_attempts,
        )
        self.config_generator = config_generator or ConfigGenerator()
        self.binary_installer = binary_installer or BinaryInstaller()
        self._backend = backend
        self._service_installer = service_installer
        self._supervisor = supervisor

        self._listeners: List[StepListener] = []
        self._detach: Dict[int, Callable[[], None]] = {}
        self._tracker = StepTracker(STEP_NAMES)
        self._state = PipelineState.NOT_STARTED
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    # Progress

    def subscribe(self, listener: StepListener) -> Callable[[], None]:
        """Receive every StepStatus change of this and later runs."""
        self._listeners.append(listener)
        self._detach[id(listener)] = self._tracker.subscribe(listener)

        def _unsubscribe() -> None:
            detach = self._detach.pop(id(listener), None)
            if detach is not None:
                detach()
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def snapshot(self) -> Tuple[StepStatus, ...]:
        return self._tracker.snapshot()

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        """Stop the run before the next stage begins; the running stage finishes."""
        logger.info("Deployment cancellation requested")
        self._cancel.set()

    # Built on first use; an unsupported platform fails install_service.

    @property
    def backend(self) -> ServiceBackend:
        if self._backend is None:
            self._backend = backend_for(self.host)
        return self._backend

    @property
    def service_installer(self) -> ServiceInstaller:
        if self._service_installer is None:
            self._service_installer = ServiceInstaller(self.backend, self.settings.service_label)
        return self._service_installer

    @property
    def supervisor(self) -> ServiceSupervisor:
        if self._supervisor is None:
            self._supervisor = ServiceSupervisor(self.backend, self.settings.service_label, self.probe)
        return self._supervisor

    # Pipeline

    def stages(self) -> Tuple[Stage, ...]:
        return (
            Stage("preflight", self._preflight, PortConflict),
            Stage("prerequisites", self._prerequisites),
            Stage("resolve", self._resolve, ReleaseNotFound),
            Stage("fetch", self._fetch, DownloadFailed),
            Stage("privileges", self._privileges, PermissionDenied),
            Stage("install_binary", self._install_binary),
            Stage("configure", self._configure, ConfigGenerationFailed),
            Stage("install_service", self._install_service, ServiceInstallFailed),
            Stage("start_service", self._start_service, StartupFailed),
        )

    def deploy(self, request: DeploymentRequest) -> DeploymentResult:
        """Run every stage for ``request`` and return the single result."""
        with self._lock:
            if self._state == PipelineState.RUNNING:
                raise RuntimeError("A deployment is already running on this orchestrator")
            self._state = PipelineState.RUNNING
            self._cancel.clear()
            self.broker.reset()
            self._tracker = StepTracker(STEP_NAMES)
            for listener in self._listeners:
                self._detach[id(listener)] = self._tracker.subscribe(listener)

        try:
            return self._run(request)
        finally:
            # An interrupt escaping a stage must not leave the orchestrator busy
            if self._state == PipelineState.RUNNING:
                self._state = PipelineState.FAILED

    def _run(self, request: DeploymentRequest) -> DeploymentResult:
        start_deployment_context(self.settings.service_label, request.mode.value)
        ctx = RunContext(request=request)
        timer = StepTimer()
        error: Optional[DeploymentError] = None
        logger.info(
            "Deployment started",
            mode=request.mode.value,
            install_path=str(request.install_path),
            version=request.version or "latest",
            offline=request.offline,
            force=request.force,
        )

        try:
            self.probe.check_conflicts(request)
        except PortConflict as e:
            # Refused before any step starts
            logger.error("Pre-flight port check failed", error=e.message)
            self._tracker.fail("preflight", e.to_info())
            self._tracker.skip_remaining("pre-flight validation failed")
            error = e

        if error is None:
            for stage in self.stages():
                error = self._run_stage(stage, ctx, timer)
                if error is not None:
                    self._tracker.skip_remaining(f"halted after {stage.name} failed")
                    break

        timer.finish()
        return self._finish(ctx, timer, error)

    def _run_stage(self, stage: Stage, ctx: RunContext, timer: StepTimer) -> Optional[DeploymentError]:
        if self._cancel.is_set():
            error = Cancelled(f"Deployment cancelled before {stage.name}")
            logger.warning("Deployment cancelled", step=stage.name)
            self._tracker.fail(stage.name, error.to_info())
            return error

        self._tracker.start(stage.name)
        timer.start_step(stage.name)
        try:
            stage.run(ctx)
        except StageSkipped as skipped:
            timer.end_step(stage.name)
            logger.info("Step skipped", step=stage.name, reason=skipped.reason)
            self._tracker.skip(stage.name, skipped.reason)
            return None
        except DeploymentError as e:
            timer.end_step(stage.name)
            logger.error("Step failed", step=stage.name, kind=e.kind, error=e.message)
            self._tracker.fail(stage.name, e.to_info())
            return e
        except Exception as e:
            timer.end_step(stage.name)
            logger.exception("Step raised an unexpected error", step=stage.name)
            wrapped = stage.error_type(f"{stage.name} failed: {e}")
            wrapped.__cause__ = e
            self._tracker.fail(stage.name, wrapped.to_info())
            return wrapped

        timer.end_step(stage.name)
        logger.info("Step completed", step=stage.name)
        self._tracker.complete(stage.name)
        return None

    def _finish(self, ctx: RunContext, timer: StepTimer, error: Optional[DeploymentError]) -> DeploymentResult:
        success = error is None and self._tracker.all_terminal()
        self._state = PipelineState.SUCCEEDED if success else PipelineState.FAILED

        installed_version = None
        if ctx.release is not None:
            installed_version = ctx.release.version
        elif success and ctx.binary_path is not None:
            installed_version = AgentBinary(ctx.binary_path).version()

        result = DeploymentResult(
            success=success,
            binary_path=ctx.binary_path,
            config_path=ctx.config_path,
            descriptor_path=ctx.descriptor_path,
            steps=self._tracker.snapshot(),
            error=error.to_info() if error is not None else None,
            installed_version=installed_version,
            durations_ms=timer.to_dict(),
        )
        if success:
            logger.info("Deployment succeeded", binary=str(ctx.binary_path), version=installed_version)
        else:
            logger.error("Deployment failed", kind=result.error.kind if result.error else None)
        return result

    # Stages

    def _target_binary(self, request: DeploymentRequest) -> Path:
        return Path(request.install_path).expanduser() / self.settings.binary_name

    def _preflight(self, ctx: RunContext) -> None:
        # Busy ports are reported, not fatal
        self.probe.unavailable(ctx.request)

    def _prerequisites(self, ctx: RunContext) -> None:
        request = ctx.request
        required = self.settings.required_disk_space_bytes
        check_disk_space(Path(request.data_path).expanduser(), required)
        if not request.offline:
            check_disk_space(Path(request.cache_path).expanduser(), required)
            return

        source = Path(request.local_binary_path).expanduser()
        if not source.is_file():
            raise ReleaseNotFound(
                f"Local binary {source} does not exist",
                recovery_hint="Check the --local-binary path or install online",
            )
        target = self._target_binary(request)
        if not request.force and target.is_file():
            ctx.already_installed = compute_file_sha256(target) == compute_file_sha256(source)
        ctx.binary_path = target

    def _resolve(self, ctx: RunContext) -> None:
        request = ctx.request
        if request.offline:
            raise StageSkipped("offline install from local binary")

        ctx.release = self.resolver.resolve(self.host, request.version)
        bind_deployment_context(version=ctx.release.version)

        target = self._target_binary(request)
        ctx.binary_path = target
        if not request.force and target.is_file() and matches_release(target, ctx.release):
            ctx.already_installed = True
            logger.info("Installed binary already matches release", path=str(target), version=ctx.release.version)

    def _fetch(self, ctx: RunContext) -> None:
        if ctx.request.offline:
            raise StageSkipped("offline install from local binary")
        if ctx.already_installed:
            raise StageSkipped("already installed")

        outcome = self.fetcher.fetch(ctx.release, Path(ctx.request.cache_path).expanduser(), force=ctx.request.force)
        ctx.artifact_path = outcome.path

    def _privileges(self, ctx: RunContext) -> None:
        request = ctx.request
        self.broker.check_ports(request.privileged_ports)

        install_path = Path(request.install_path).expanduser()
        if ctx.already_installed or not self.broker.requires_elevation(install_path):
            raise StageSkipped("no elevation required")
        ctx.grant = self.broker.acquire(install_path)

    def _install_binary(self, ctx: RunContext) -> None:
        if ctx.already_installed:
            raise StageSkipped("already installed")

        request = ctx.request
        install_dir = Path(request.install_path).expanduser()
        source = Path(request.local_binary_path).expanduser() if request.offline else ctx.artifact_path
        prefix = ()
        if ctx.grant is not None and not self.broker.can_write(install_dir):
            prefix = ctx.grant.command_prefix
        ctx.binary_path = self.binary_installer.install(
            source,
            install_dir,
            self.settings.binary_name,
            command_prefix=prefix,
        )

    def _configure(self, ctx: RunContext) -> None:
        ctx.config_path = self.config_generator.generate(ctx.request, ctx.binary_path)

    def _install_service(self, ctx: RunContext) -> None:
        ctx.descriptor_path = self.service_installer.install(ctx.binary_path, ctx.config_path, ctx.request)

    def _start_service(self, ctx: RunContext) -> None:
        request = ctx.request
        if not request.enable_service:
            raise StageSkipped("service start disabled")

        readiness = None if request.mode == DeploymentMode.CLIENT else request.gui
        self.supervisor.start(readiness)
