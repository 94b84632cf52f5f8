"""Name, environment and command rules for sites and services."""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

from hostplane.exceptions import ValidationError
from hostplane.types import ServiceType

SITE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{2,29}$")
SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{1,29}$")
COMMAND_NAME_RE = SERVICE_NAME_RE
ENV_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)

RESERVED_COMMAND_NAMES = frozenset(
    {"start", "stop", "restart", "install", "build", "status", "logs"}
)

ALLOWED_START_PREFIXES = (
    "npm", "node", "yarn", "pnpm",
    "python", "python3", "pip",
    "php", "php-fpm",
    "ruby", "bundle",
    "go", "cargo",
    "java", "dotnet",
    "./start", "./run", "./app",
)

# Shell metacharacters, traversal, system paths, privilege changes, fetch-and-pipe
_FORBIDDEN = [
    re.compile(r"[;&|`$(){}\[\]<>\\]"),
    re.compile(r"\.\."),
    re.compile(r"/etc/"),
    re.compile(r"/root"),
    re.compile(r"sudo|su\s"),
    re.compile(r"chmod|chown"),
    re.compile(r"rm\s+-rf"),
    re.compile(r"wget|curl.*\|"),
]
_FORBIDDEN_CUSTOM = _FORBIDDEN + [
    re.compile(r"mkfs|dd\s"),
    re.compile(r"shutdown|reboot"),
]


class RuntimeConfig(NamedTuple):
    binary: Optional[str]
    default_install: Optional[str]


RUNTIMES: dict[ServiceType, RuntimeConfig] = {
    ServiceType.NODE: RuntimeConfig("/usr/bin/node", "npm install --production"),
    ServiceType.PYTHON: RuntimeConfig("/usr/bin/python3", "pip install -r requirements.txt"),
    ServiceType.PHP: RuntimeConfig("/usr/bin/php", "composer install --no-dev"),
    ServiceType.RUBY: RuntimeConfig("/usr/bin/ruby", "bundle install --deployment"),
    ServiceType.GO: RuntimeConfig("/usr/bin/go", "go build -o app"),
    ServiceType.RUST: RuntimeConfig("/usr/bin/cargo", "cargo build --release"),
    ServiceType.JAVA: RuntimeConfig("/usr/bin/java", "mvn package -DskipTests"),
    ServiceType.DOTNET: RuntimeConfig(
        "/usr/bin/dotnet", "dotnet restore && dotnet build -c Release"
    ),
    ServiceType.STATIC: RuntimeConfig(None, None),
    ServiceType.CUSTOM: RuntimeConfig(None, None),
}


def runtime_for(service_type: ServiceType) -> RuntimeConfig:
    return RUNTIMES.get(service_type, RUNTIMES[ServiceType.CUSTOM])


def validate_site_name(name: str) -> str:
    if not SITE_NAME_RE.match(name or ""):
        raise ValidationError(
            "Site name must be 3-30 characters: lowercase letters, digits, '-' or '_', "
            "starting with a letter"
        )
    return name


def validate_service_name(name: str) -> str:
    if not SERVICE_NAME_RE.match(name or ""):
        raise ValidationError(
            "Service name must be 2-30 characters: lowercase letters, digits, '-' or '_', "
            "starting with a letter"
        )
    return name


def validate_env(env: dict[str, Optional[str]]) -> dict[str, Optional[str]]:
    for key, value in env.items():
        if not ENV_KEY_RE.match(key):
            raise ValidationError(f"Invalid environment variable name: {key}")
        if value is not None and "\n" in value:
            raise ValidationError(f"Environment value for {key} must be a single line")
    return env


def validate_domain(domain: str) -> str:
    domain = (domain or "").strip().lower()
    if not DOMAIN_RE.match(domain):
        raise ValidationError(f"Invalid domain name: {domain}")
    return domain


def _check_forbidden(command: str, patterns: list[re.Pattern]) -> None:
    for pattern in patterns:
        if pattern.search(command):
            raise ValidationError("Command contains forbidden patterns")


def validate_start_command(command: str) -> str:
    command = (command or "").strip()
    if not command:
        raise ValidationError("Start command is required")
    _check_forbidden(command, _FORBIDDEN)
    lowered = command.lower()
    allowed = any(
        lowered == prefix
        or lowered.startswith(prefix + " ")
        or (prefix.startswith("./") and lowered.startswith(prefix))
        for prefix in ALLOWED_START_PREFIXES
    )
    if not allowed:
        raise ValidationError(
            "Start command must begin with a known runtime "
            f"({', '.join(ALLOWED_START_PREFIXES)})"
        )
    return command


def validate_shell_command(command: str) -> str:
    """Install, build and stop commands: forbidden patterns only."""
    command = (command or "").strip()
    if command:
        _check_forbidden(command, _FORBIDDEN)
    return command


def validate_custom_command(name: str, command: str) -> None:
    if not COMMAND_NAME_RE.match(name or ""):
        raise ValidationError("Invalid command name")
    if name in RESERVED_COMMAND_NAMES:
        raise ValidationError(f"Command name '{name}' is reserved")
    if not (command or "").strip():
        raise ValidationError("Command is required")
    _check_forbidden(command, _FORBIDDEN_CUSTOM)
