import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from agent_deploy.core.exceptions import DeploymentError, InsufficientDiskSpace, PermissionDenied
from agent_deploy.deploy.install import BinaryInstaller, check_disk_space
from agent_deploy.host.binary import AgentBinary
from agent_deploy.host.platform import HostPlatform, default_paths, nearest_existing_path
from agent_deploy.host.privilege import PrivilegeBroker


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPlatform:
    def test_asset_suffix(self):
        assert HostPlatform(os="darwin", arch="arm64").asset_suffix == "darwin-arm64"

    def test_current_normalizes_machine(self, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        monkeypatch.setattr("platform.machine", lambda: "x86_64")
        assert HostPlatform.current() == HostPlatform(os="linux", arch="amd64")

    def test_macos_defaults(self, tmp_path: Path):
        paths = default_paths(HostPlatform(os="darwin", arch="arm64"), home=tmp_path)
        assert paths["install"] == Path("/usr/local/bin")
        assert paths["data"] == tmp_path / "Library" / "Application Support" / "Velociraptor"
        assert paths["logs"] == tmp_path / "Library" / "Logs" / "Velociraptor"
        assert paths["cache"] == tmp_path / "Library" / "Caches" / "Velociraptor"

    def test_linux_defaults_follow_xdg(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
        monkeypatch.delenv("XDG_STATE_HOME", raising=False)
        monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
        paths = default_paths(HostPlatform(os="linux", arch="amd64"), home=tmp_path)
        assert paths["install"] == tmp_path / ".local" / "bin"
        assert paths["data"] == tmp_path / "xdg-data" / "velociraptor"
        assert paths["logs"] == tmp_path / ".local" / "state" / "velociraptor" / "logs"
        assert paths["cache"] == tmp_path / ".cache" / "velociraptor"

    def test_nearest_existing_path(self, tmp_path: Path):
        assert nearest_existing_path(tmp_path / "a" / "b" / "c") == tmp_path


class TestPrivilegeBroker:
    def test_root_needs_nothing(self, tmp_path: Path):
        broker = PrivilegeBroker(euid=lambda: 0, interactive=lambda: False, sudo_path="")
        broker.check_ports([443])
        grant = broker.acquire(Path("/usr/local/bin"))
        assert not grant.elevated
        assert grant.command_prefix == ()

    def test_writable_path(self, tmp_path: Path):
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: False, sudo_path="")
        assert not broker.requires_elevation(tmp_path / "bin")
        assert broker.acquire(tmp_path / "bin").command_prefix == ()

    def test_low_port_refused_without_prompt(self):
        runner = MagicMock(return_value=_completed(0))
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: True, sudo_path="/usr/bin/sudo", runner=runner)
        with pytest.raises(PermissionDenied) as exc:
            broker.check_ports([443, 80])
        assert "80, 443" in exc.value.message
        assert "80, 443" in exc.value.recovery_hint
        assert "1024" in exc.value.recovery_hint
        runner.assert_not_called()

    def test_unprivileged_ports_pass(self):
        PrivilegeBroker(euid=lambda: 1000, interactive=lambda: False, sudo_path="").check_ports([])

    def test_unwritable_path_prompts_once(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        runner = MagicMock(return_value=_completed(0))
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: True, sudo_path="/usr/bin/sudo", runner=runner)

        grant = broker.acquire(tmp_path / "bin")
        broker.acquire(tmp_path / "bin")

        assert grant.elevated
        assert grant.command_prefix == ("sudo",)
        runner.assert_called_once_with(["/usr/bin/sudo", "-v"], check=False)

    def test_reset_prompts_again(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        runner = MagicMock(side_effect=[_completed(1), _completed(0)])
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: True, sudo_path="/usr/bin/sudo", runner=runner)

        with pytest.raises(PermissionDenied):
            broker.acquire(tmp_path / "bin")
        broker.reset()
        assert broker.acquire(tmp_path / "bin").elevated
        assert runner.call_count == 2

    def test_declined_prompt(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        runner = MagicMock(return_value=_completed(1))
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: True, sudo_path="/usr/bin/sudo", runner=runner)
        with pytest.raises(PermissionDenied) as exc:
            broker.acquire(tmp_path / "bin")
        assert exc.value.recoverable
        assert "administrator" in exc.value.recovery_hint

    def test_non_interactive_never_prompts(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        runner = MagicMock()
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: False, sudo_path="/usr/bin/sudo", runner=runner)
        with pytest.raises(PermissionDenied):
            broker.acquire(tmp_path / "bin")
        runner.assert_not_called()

    def test_unwritable_install_path(self, tmp_path: Path, monkeypatch):
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        broker = PrivilegeBroker(euid=lambda: 1000, interactive=lambda: False, sudo_path="")
        assert broker.requires_elevation(tmp_path / "bin")


class TestBinaryInstaller:
    def test_direct_install_is_executable(self, tmp_path: Path):
        source = tmp_path / "artifact"
        source.write_bytes(b"binary")
        target = BinaryInstaller().install(source, tmp_path / "bin", "velociraptor")

        assert target == tmp_path / "bin" / "velociraptor"
        assert target.read_bytes() == b"binary"
        assert os.stat(target).st_mode & 0o777 == 0o755
        assert [p.name for p in target.parent.iterdir()] == ["velociraptor"]

    def test_missing_source(self, tmp_path: Path):
        with pytest.raises(DeploymentError):
            BinaryInstaller().install(tmp_path / "nope", tmp_path / "bin", "velociraptor")

    def test_elevated_install_uses_prefix(self, tmp_path: Path):
        source = tmp_path / "artifact"
        source.write_bytes(b"binary")
        runner = MagicMock(return_value=_completed(0))
        target = BinaryInstaller(runner=runner).install(source, Path("/usr/local/bin"), "velociraptor", ("sudo",))

        assert target == Path("/usr/local/bin/velociraptor")
        commands = [c.args[0] for c in runner.call_args_list]
        assert commands == [
            ["sudo", "install", "-d", "-m", "0755", "/usr/local/bin"],
            ["sudo", "install", "-m", "0755", str(source), "/usr/local/bin/velociraptor"],
        ]

    def test_elevated_install_failure(self, tmp_path: Path):
        source = tmp_path / "artifact"
        source.write_bytes(b"binary")
        runner = MagicMock(return_value=_completed(1, stderr="sudo: a password is required"))
        with pytest.raises(PermissionDenied):
            BinaryInstaller(runner=runner).install(source, Path("/usr/local/bin"), "velociraptor", ("sudo",))


class TestDiskSpace:
    def test_enough_space(self, tmp_path: Path):
        assert check_disk_space(tmp_path / "not-yet", 0) > 0

    def test_not_enough_space(self, tmp_path: Path):
        usage = MagicMock(free=100 * 1024 * 1024)
        with patch("shutil.disk_usage", return_value=usage):
            with pytest.raises(InsufficientDiskSpace) as exc:
                check_disk_space(tmp_path, 500 * 1024 * 1024)
        assert "100 MB free" in exc.value.message


class TestAgentBinary:
    def test_frontend_command(self, tmp_path: Path):
        cmd = AgentBinary(tmp_path / "velociraptor").frontend_command(tmp_path / "server.config.yaml")
        assert cmd == [str(tmp_path / "velociraptor"), "frontend", "--config", str(tmp_path / "server.config.yaml")]

    def test_version(self, tmp_path: Path):
        binary = tmp_path / "velociraptor"
        binary.write_bytes(b"")
        with patch("subprocess.run", return_value=_completed(0, stdout="0.7.1\n")) as run:
            assert AgentBinary(binary).version() == "0.7.1"
        assert run.call_args[0][0] == [str(binary), "version"]

    def test_version_failure_is_none(self, tmp_path: Path):
        binary = tmp_path / "velociraptor"
        binary.write_bytes(b"")
        with patch("subprocess.run", return_value=_completed(2, stdout="boom")):
            assert AgentBinary(binary).version() is None
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="v", timeout=1)):
            assert AgentBinary(binary).version() is None

    def test_missing_binary_version(self, tmp_path: Path):
        assert AgentBinary(tmp_path / "missing").version() is None
