import hashlib
import os
from pathlib import Path

import pytest
import yaml
from pydantic import SecretStr

from agent_deploy.core.exceptions import ConfigGenerationFailed
from agent_deploy.deploy.config_gen import ConfigGenerator
from agent_deploy.deploy.models import DeploymentMode, LogLevel, NetworkBinding


def test_render_is_deterministic(make_request, tmp_path: Path):
    gen = ConfigGenerator()
    first = gen.render(make_request(), tmp_path / "bin" / "velociraptor")
    second = ConfigGenerator().render(make_request(), tmp_path / "bin" / "velociraptor")
    assert first == second


def test_generate_is_byte_identical_across_runs(make_request, tmp_path: Path):
    gen = ConfigGenerator()
    req = make_request()
    path = gen.generate(req, tmp_path / "bin" / "velociraptor")
    first = path.read_bytes()
    gen.generate(req, tmp_path / "bin" / "velociraptor")
    assert path.read_bytes() == first


def test_standalone_document(make_request, tmp_path: Path):
    req = make_request(log_level=LogLevel.DEBUG, organization="Acme", admin_username="analyst")
    doc = yaml.safe_load(ConfigGenerator().render(req, tmp_path / "velociraptor"))

    assert doc["version"]["name"] == "Acme"
    assert doc["Client"]["server_urls"] == ["https://localhost:8000/"]
    assert doc["Frontend"] == {"bind_address": "0.0.0.0", "bind_port": 8000}
    assert doc["GUI"]["bind_port"] == 8889
    assert doc["GUI"]["initial_users"] == [{"name": "analyst"}]
    assert doc["API"] == {"bind_address": "127.0.0.1", "bind_port": 8001}
    assert doc["Datastore"]["location"] == str(tmp_path / "data")
    assert doc["Logging"]["output_directory"] == str(tmp_path / "logs")
    assert doc["Logging"]["level"] == "DEBUG"
    assert doc["Logging"]["debug"] is True


def test_client_mode_has_no_server_sections(make_request, tmp_path: Path):
    req = make_request(mode=DeploymentMode.CLIENT, frontend=NetworkBinding(address="10.0.0.5", port=8000))
    doc = yaml.safe_load(ConfigGenerator().render(req, tmp_path / "velociraptor"))
    assert set(doc) == {"version", "Client"}
    assert doc["Client"]["server_urls"] == ["https://10.0.0.5:8000/"]


def test_header_records_binary(make_request, tmp_path: Path):
    text = ConfigGenerator().render(make_request(), tmp_path / "velociraptor")
    assert f"# Binary: {tmp_path / 'velociraptor'}" in text.splitlines()


def test_generate_creates_directories_and_permissions(make_request, tmp_path: Path):
    req = make_request()
    path = ConfigGenerator().generate(req, tmp_path / "velociraptor")

    assert path == tmp_path / "data" / "config" / "server.config.yaml"
    for d in ("data", "logs", "cache", "data/config"):
        assert (tmp_path / d).is_dir()
    assert os.stat(path).st_mode & 0o777 == 0o640
    assert not path.with_name(path.name + ".tmp").exists()


def test_unwritable_target(make_request, tmp_path: Path):
    blocker = tmp_path / "data"
    blocker.write_text("not a directory")
    with pytest.raises(ConfigGenerationFailed):
        ConfigGenerator().generate(make_request(), tmp_path / "velociraptor")


def test_admin_password_stored_as_salted_hash(make_request, tmp_path: Path):
    req = make_request(admin_password=SecretStr("emergency_s3cret"))
    text = ConfigGenerator().render(req, tmp_path / "velociraptor")
    user = yaml.safe_load(text)["GUI"]["initial_users"][0]

    salt = bytes.fromhex(user["password_salt"])
    assert user["name"] == "admin"
    assert user["password_hash"] == hashlib.sha256(salt + b"emergency_s3cret").hexdigest()
    assert "emergency_s3cret" not in text
    assert text == ConfigGenerator().render(req, tmp_path / "velociraptor")
