"""Tests for name, environment and command rules."""

import pytest

from hostplane.exceptions import ValidationError
from hostplane.services import validation
from hostplane.types import ServiceType


@pytest.mark.parametrize("name", ["demo", "my-site", "a_b_c", "x" + "1" * 29])
def test_valid_site_names(name):
    assert validation.validate_site_name(name) == name


@pytest.mark.parametrize("name", ["ab", "Demo", "1site", "my site", "x" * 31, ""])
def test_invalid_site_names(name):
    with pytest.raises(ValidationError):
        validation.validate_site_name(name)


def test_service_names_allow_two_characters():
    assert validation.validate_service_name("db") == "db"
    with pytest.raises(ValidationError):
        validation.validate_service_name("w")


@pytest.mark.parametrize("command", [
    "node server.js",
    "npm start",
    "python3 -m http.server",
    "./start.sh",
    "go run main.go",
])
def test_allowed_start_commands(command):
    assert validation.validate_start_command(command) == command


@pytest.mark.parametrize("command", [
    "node server.js; rm -rf /",
    "node $(whoami)",
    "bash start.sh",
    "node ../other/server.js",
    "python3 /etc/passwd",
    "sudo node server.js",
    "",
])
def test_rejected_start_commands(command):
    with pytest.raises(ValidationError):
        validation.validate_start_command(command)


def test_custom_command_rules():
    validation.validate_custom_command("migrate", "npm run migrate")
    with pytest.raises(ValidationError, match="reserved"):
        validation.validate_custom_command("restart", "npm run restart")
    with pytest.raises(ValidationError):
        validation.validate_custom_command("wipe", "dd if=/dev/zero of=disk.img")
    with pytest.raises(ValidationError):
        validation.validate_custom_command("halt", "shutdown now")


def test_environment_keys_and_values():
    validation.validate_env({"NODE_ENV": "production", "REMOVED": None})
    with pytest.raises(ValidationError):
        validation.validate_env({"node_env": "x"})
    with pytest.raises(ValidationError):
        validation.validate_env({"MULTI": "a\nb"})


def test_domains_are_normalized():
    assert validation.validate_domain(" Example.COM ") == "example.com"
    with pytest.raises(ValidationError):
        validation.validate_domain("not a domain")


def test_runtime_defaults():
    node = validation.runtime_for(ServiceType.NODE)
    assert node.binary == "/usr/bin/node"
    assert node.default_install == "npm install --production"
    assert validation.runtime_for(ServiceType.CUSTOM).binary is None
