"""Configuration loading and merging for rollcall."""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, Optional

import yaml


ROLLCALL_HOME = Path.home() / ".rollcall"

STORE_KINDS = ("auto", "file", "http", "event")


@dataclass
class RegistryConfig:
    # Which record store to use: file, http, event, or auto-detect
    store: str = "auto"

    # File store: shared snapshot document
    registry_path: str = str(ROLLCALL_HOME / "registry.json")

    # HTTP store: snapshot endpoint served by another process (rollcall serve)
    registry_url: str = "http://localhost:8471/registry"

    # Event store connection target, e.g. redis://localhost:6379/0
    event_store_url: Optional[str] = None
    event_store_base: str = "rollcall-dev"

    # Probe / fetch timeout and the retry policy shared by all stores (seconds)
    health_check_timeout: float = 5.0
    retry_attempts: int = 3
    retry_delay: float = 1.0

    # File store housekeeping (0 disables the cleanup timer)
    cleanup_interval: float = 60.0
    service_timeout: float = 300.0
    cleanup_probe_timeout: float = 2.0

    # HTTP store snapshot cache
    cache_ttl: float = 5.0

    # Event store: self-reported health and presence key expiry
    health_update_interval: float = 30.0
    presence_ttl: float = 30.0

    # Namespace override and the persisted generated identity
    namespace: Optional[str] = None
    user_id_path: str = str(ROLLCALL_HOME / "user-id")


# Environment variable -> config field
_ENV_FIELDS = {
    "ROLLCALL_STORE": "store",
    "ROLLCALL_REGISTRY_PATH": "registry_path",
    "ROLLCALL_REGISTRY_URL": "registry_url",
    "ROLLCALL_EVENT_STORE_URL": "event_store_url",
    "ROLLCALL_EVENT_STORE_BASE": "event_store_base",
    "ROLLCALL_NAMESPACE": "namespace",
}

_FLOAT_FIELDS = {f.name for f in fields(RegistryConfig) if f.type in (float, "float")}
_INT_FIELDS = {f.name for f in fields(RegistryConfig) if f.type in (int, "int")}


def _coerce(name: str, value):
    if value is None:
        return None
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _INT_FIELDS:
        return int(value)
    return value


def _validate(config: RegistryConfig) -> None:
    if config.store not in STORE_KINDS:
        raise ValueError(
            f"Unknown store '{config.store}' (expected one of: {', '.join(STORE_KINDS)})"
        )


def load_config(path: str | Path) -> RegistryConfig:
    """Load a RegistryConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(RegistryConfig)}
    filtered = {k: _coerce(k, v) for k, v in data.items() if k in valid_fields}

    config = RegistryConfig(**filtered)
    _validate(config)
    return config


def find_config_file(environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Return the first existing config file, or None."""
    environ = os.environ if environ is None else environ
    candidates = []
    if environ.get("ROLLCALL_CONFIG"):
        candidates.append(Path(environ["ROLLCALL_CONFIG"]).expanduser())
    candidates.append(ROLLCALL_HOME / "config.yaml")
    candidates.append(Path.cwd() / ".rollcall.yaml")
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def apply_env_overrides(config: RegistryConfig,
                        environ: Optional[Mapping[str, str]] = None) -> RegistryConfig:
    """Overlay ROLLCALL_* environment variables. Environment takes precedence over files."""
    environ = os.environ if environ is None else environ
    for var, name in _ENV_FIELDS.items():
        value = environ.get(var)
        if value:
            setattr(config, name, _coerce(name, value))
    _validate(config)
    return config


def merge_cli_args(config: RegistryConfig, args) -> RegistryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RegistryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, _coerce(f.name, cli_val))
    _validate(config)
    return config


def update_config(config: RegistryConfig, **overrides) -> RegistryConfig:
    """Return a copy of *config* with *overrides* applied. Unknown keys are rejected."""
    valid_fields = {f.name for f in fields(RegistryConfig)}
    unknown = sorted(set(overrides) - valid_fields)
    if unknown:
        raise ValueError(f"Unknown config option(s): {', '.join(unknown)}")
    updated = replace(config, **{k: _coerce(k, v) for k, v in overrides.items()})
    _validate(updated)
    return updated


def default_config(environ: Optional[Mapping[str, str]] = None) -> RegistryConfig:
    """Defaults, then the discovered config file, then the environment."""
    path = find_config_file(environ)
    config = load_config(path) if path else RegistryConfig()
    return apply_env_overrides(config, environ)


def config_to_yaml(config: RegistryConfig) -> str:
    """Serialize a RegistryConfig to YAML, skipping unset optional values."""
    data: dict = {}
    for f in fields(RegistryConfig):
        value = getattr(config, f.name)
        if value is None:
            continue
        data[f.name] = value
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
