from __future__ import annotations

import dataclasses
import logging
import os
import re
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv

from agent_runner.backends import (
    CONTAINER_RUNTIMES,
    DEFAULT_FLY_REGION,
    DEFAULT_FLY_VM_MEMORY_MB,
    DEFAULT_IMAGE,
    DEFAULT_SANDBOX_NAME,
)
from agent_runner.correlator import DEFAULT_CORRELATION_TIMEOUT_SECONDS, DEFAULT_FLUSH_GRACE_SECONDS
from agent_runner.coordinator import DEFAULT_LOG_CONNECT_GRACE_SECONDS
from agent_runner.credentials import (
    DEFAULT_KEYCHAIN_SERVICE,
    DEFAULT_REFRESH_THRESHOLD_SECONDS,
    DEFAULT_REFRESH_TIMEOUT_SECONDS,
)
from agent_runner.task import DEFAULT_MAX_TURNS, DEFAULT_OUTPUT_FORMAT, OUTPUT_FORMATS


CONFIG_FILE_NAME = "agent-runner.toml"
FLY_TOML_FILE_NAME = "fly.toml"
FLY_IMAGE_REF_FILE_NAME = ".fly-image-ref"
FLY_PLACEHOLDER_APP = "cpm-runner"
FLY_PLACEHOLDER_ORG = "personal"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")

ENV_OVERRIDES = {
    "AGENT_RUNNER_IMAGE": "image",
    "AGENT_RUNNER_RUNTIME": "runtime",
    "AGENT_RUNNER_MAX_TURNS": "max_turns",
    "AGENT_RUNNER_SANDBOX_NAME": "sandbox_name",
    "AGENT_RUNNER_SANDBOX_WORKSPACE": "sandbox_workspace",
    "AGENT_RUNNER_REFRESH_COMMAND": "refresh_command",
    "AGENT_RUNNER_LOG_LEVEL": "log_level",
    "FLY_APP": "fly_app",
    "FLY_ORG": "fly_org",
    "FLY_REGION": "fly_region",
    "FLY_IMAGE": "fly_image",
}

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


class ConfigError(Exception):
    pass


def _default_credentials_file() -> Path:
    return Path.home() / ".claude" / ".credentials.json"


def _default_sandbox_workspace() -> Path:
    return Path.home() / ".agent-runner" / "sandbox-workspace"


@dataclass(frozen=True)
class RunnerConfig:
    image: str = DEFAULT_IMAGE
    runtime: str = "docker"
    max_turns: int = DEFAULT_MAX_TURNS
    output_format: str = DEFAULT_OUTPUT_FORMAT
    sandbox_name: str = DEFAULT_SANDBOX_NAME
    sandbox_workspace: Path = field(default_factory=_default_sandbox_workspace)
    fly_app: str | None = None
    fly_org: str | None = None
    fly_region: str = DEFAULT_FLY_REGION
    fly_image: str | None = None
    fly_vm_memory_mb: int = DEFAULT_FLY_VM_MEMORY_MB
    correlation_timeout: float = DEFAULT_CORRELATION_TIMEOUT_SECONDS
    flush_grace_seconds: float = DEFAULT_FLUSH_GRACE_SECONDS
    log_connect_grace_seconds: float = DEFAULT_LOG_CONNECT_GRACE_SECONDS
    keychain_service: str = DEFAULT_KEYCHAIN_SERVICE
    credentials_file: Path = field(default_factory=_default_credentials_file)
    refresh_command: tuple[str, ...] = ()
    refresh_threshold_seconds: float = DEFAULT_REFRESH_THRESHOLD_SECONDS
    refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS
    log_level: str = "info"

    def replace(self, **changes: Any) -> "RunnerConfig":
        return _validated(dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None}))


_INT_FIELDS = {"max_turns", "fly_vm_memory_mb"}
_FLOAT_FIELDS = {
    "correlation_timeout",
    "flush_grace_seconds",
    "log_connect_grace_seconds",
    "refresh_threshold_seconds",
    "refresh_timeout",
}
_FIELD_NAMES = {f.name for f in dataclasses.fields(RunnerConfig)}


def _repo_root() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


def _default_config_file(cwd: Path) -> Path | None:
    for candidate in (_repo_root() / "config" / CONFIG_FILE_NAME, cwd / "config" / CONFIG_FILE_NAME):
        if candidate.is_file():
            return candidate
    return None


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Unable to parse config file {path}: {exc}") from exc
    return parsed if isinstance(parsed, dict) else {}


def _coerce(key: str, value: Any) -> Any:
    if key in _INT_FIELDS:
        try:
            if isinstance(value, bool):
                raise ValueError
            return int(str(value).strip(), 10)
        except ValueError as exc:
            raise ConfigError(f"Invalid {key}: {value!r} (expected an integer)") from exc
    if key in _FLOAT_FIELDS:
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid {key}: {value!r} (expected a number)") from exc
    if key == "refresh_command":
        if isinstance(value, str):
            return tuple(shlex.split(value))
        if isinstance(value, list):
            return tuple(str(part) for part in value)
        raise ConfigError(f"Invalid refresh_command: {value!r}")
    if key in {"credentials_file", "sandbox_workspace"}:
        return Path(str(value)).expanduser()
    text = str(value).strip()
    return text or None


def _validated(config: RunnerConfig) -> RunnerConfig:
    if config.runtime not in CONTAINER_RUNTIMES:
        raise ConfigError(f"Invalid runtime: {config.runtime!r} (expected one of: {', '.join(CONTAINER_RUNTIMES)})")
    if config.max_turns < 1:
        raise ConfigError(f"Invalid max_turns: {config.max_turns} (must be >= 1)")
    if config.output_format not in OUTPUT_FORMATS:
        raise ConfigError(f"Invalid output_format: {config.output_format!r}")
    if config.fly_vm_memory_mb < 256:
        raise ConfigError(f"Invalid fly_vm_memory_mb: {config.fly_vm_memory_mb} (must be >= 256)")
    for name in _FLOAT_FIELDS:
        if getattr(config, name) < 0:
            raise ConfigError(f"Invalid {name}: must not be negative")
    if config.log_level not in LOG_LEVEL_CHOICES:
        return dataclasses.replace(config, log_level="info")
    return config


def _fly_toml_value(text: str, key: str) -> str | None:
    match = re.search(rf"^{key}\s*=\s*[\"']?([^\"'\s#]+)", text, flags=re.MULTILINE)
    return match.group(1) if match else None


def read_fly_toml(path: Path) -> dict[str, str]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeError):
        return {}
    values: dict[str, str] = {}
    app = _fly_toml_value(text, "app")
    if app and app != FLY_PLACEHOLDER_APP:
        values["fly_app"] = app
    org = _fly_toml_value(text, "org")
    if org and org != FLY_PLACEHOLDER_ORG:
        values["fly_org"] = org
    return values


def read_image_ref(path: Path) -> str | None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeError):
        return None
    value = lines[0].strip() if lines else ""
    return value or None


def load_config(
    config_file: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    load_env_file: bool = True,
) -> RunnerConfig:
    working_dir = Path.cwd() if cwd is None else Path(cwd)
    if load_env_file:
        load_dotenv(working_dir / ".env", override=False)
    environ = os.environ if env is None else env

    values: dict[str, Any] = {}

    if config_file is not None and not Path(config_file).is_file():
        raise ConfigError(f"Config file not found: {config_file}")
    resolved_file = Path(config_file) if config_file is not None else _default_config_file(working_dir)
    if resolved_file is not None:
        for key, value in _read_toml(resolved_file).items():
            if key not in _FIELD_NAMES:
                LOGGER.warning("Ignoring unknown config key %r in %s", key, resolved_file)
                continue
            values[key] = _coerce(key, value)

    for env_name, key in ENV_OVERRIDES.items():
        raw = str(environ.get(env_name, "")).strip()
        if raw:
            values[key] = _coerce(key, raw)

    fly_toml = read_fly_toml(working_dir / FLY_TOML_FILE_NAME)
    for key, value in fly_toml.items():
        if not values.get(key):
            values[key] = value
    if not values.get("fly_image"):
        values["fly_image"] = read_image_ref(working_dir / FLY_IMAGE_REF_FILE_NAME)

    cleaned = {key: value for key, value in values.items() if value is not None}
    if isinstance(cleaned.get("log_level"), str):
        cleaned["log_level"] = cleaned["log_level"].lower()
    return _validated(RunnerConfig(**cleaned))
