from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_deploy.core.exceptions import PermissionDenied, PortConflict
from agent_deploy.deploy.models import (
    ALLOWED_TRANSITIONS,
    DeploymentMode,
    DeploymentRequest,
    DeploymentResult,
    NetworkBinding,
    ReleaseInfo,
    StepState,
    StepStatus,
)
from agent_deploy.host.platform import HostPlatform


def test_request_defaults(make_request):
    req = make_request()
    assert req.mode == DeploymentMode.STANDALONE
    assert str(req.frontend) == "0.0.0.0:8000"
    assert str(req.gui) == "127.0.0.1:8889"
    assert str(req.api) == "127.0.0.1:8001"
    assert req.enable_service is True
    assert req.force is False
    assert not req.offline
    assert req.port_conflicts() == []


def test_request_is_frozen(make_request):
    req = make_request()
    with pytest.raises(ValidationError):
        req.force = True


def test_port_out_of_range_rejected_at_construction():
    with pytest.raises(ValidationError):
        NetworkBinding(port=0)
    with pytest.raises(ValidationError):
        NetworkBinding(port=70000)


def test_invalid_address_rejected():
    with pytest.raises(ValidationError):
        NetworkBinding(address="localhost", port=80)


def test_duplicate_ports_reported_not_rejected(make_request):
    req = make_request(api=NetworkBinding(port=8889))
    assert req.port_conflicts() == [("gui", "api", 8889)]


def test_privileged_port_detection(make_request):
    assert not make_request().requires_privileged_port
    req = make_request(frontend=NetworkBinding(address="0.0.0.0", port=443))
    assert req.requires_privileged_port


def test_release_sha256_prefix_stripped():
    info = ReleaseInfo(
        version="v1",
        asset_name="a",
        download_url="https://x/a",
        size=1,
        sha256="sha256:" + "AB" * 32,
    )
    assert info.sha256 == "ab" * 32


def test_release_bad_sha256_rejected():
    with pytest.raises(ValidationError):
        ReleaseInfo(version="v1", asset_name="a", download_url="https://x/a", size=1, sha256="deadbeef")


def test_transitions_never_leave_terminal_states():
    for state in (StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED):
        assert state.is_terminal
        assert ALLOWED_TRANSITIONS[state] == set()
    assert StepState.PENDING not in ALLOWED_TRANSITIONS[StepState.IN_PROGRESS]


def test_error_info_carries_kind_and_hint():
    info = PermissionDenied("no access").to_info()
    assert info.kind == "PermissionDenied"
    assert info.message == "no access"
    assert info.recovery_hint == "Try running with administrator privileges"

    custom = PortConflict("dup", recovery_hint="pick another").to_info()
    assert custom.recovery_hint == "pick another"


def test_result_step_lookup():
    result = DeploymentResult(
        success=False,
        steps=(StepStatus(name="preflight", state=StepState.FAILED), StepStatus(name="resolve", state=StepState.SKIPPED)),
    )
    assert result.state_of("preflight") == StepState.FAILED
    assert result.step("resolve").state == StepState.SKIPPED
    with pytest.raises(KeyError):
        result.step("missing")


def test_client_binds_no_privileged_ports(make_request):
    req = make_request(mode=DeploymentMode.CLIENT, frontend=NetworkBinding(address="10.0.0.5", port=443))
    assert req.privileged_ports == []
    assert not req.requires_privileged_port


def test_emergency_preset(tmp_path: Path):
    req = DeploymentRequest.emergency(home=tmp_path, host=HostPlatform(os="darwin", arch="arm64"))

    assert req.mode == DeploymentMode.STANDALONE
    assert req.data_path == tmp_path / "EmergencyVelociraptor"
    assert req.log_path == tmp_path / "EmergencyVelociraptor" / "logs"
    assert req.cache_path == tmp_path / "EmergencyVelociraptor" / "cache"
    assert req.install_path == Path("/usr/local/bin")
    assert req.admin_username == "admin"
    assert req.admin_password.get_secret_value().startswith("emergency_")
    assert req.port_conflicts() == []
    assert "emergency_" not in repr(req)


def test_emergency_credential_is_fresh(tmp_path: Path):
    first = DeploymentRequest.emergency(home=tmp_path)
    second = DeploymentRequest.emergency(home=tmp_path)
    assert first.admin_password.get_secret_value() != second.admin_password.get_secret_value()
