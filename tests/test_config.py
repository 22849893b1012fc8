"""Tests for configuration loading and merging."""

import argparse

import pytest
import yaml

from rollcall.config import (
    RegistryConfig,
    apply_env_overrides,
    config_to_yaml,
    default_config,
    load_config,
    merge_cli_args,
    update_config,
)


def test_defaults():
    config = RegistryConfig()

    assert config.store == "auto"
    assert config.registry_path.endswith("registry.json")
    assert config.health_check_timeout == 5.0
    assert config.retry_attempts == 3
    assert config.cache_ttl == 5.0
    assert config.namespace is None


def test_load_config_keeps_known_keys(tmp_path):
    path = tmp_path / "rollcall.yaml"
    path.write_text(yaml.dump({
        "store": "file",
        "registry_path": "/tmp/x.json",
        "retry_attempts": "5",
        "cleanup_interval": 10,
        "unknown_key": "ignored",
    }))

    config = load_config(path)

    assert config.store == "file"
    assert config.registry_path == "/tmp/x.json"
    assert config.retry_attempts == 5
    assert config.cleanup_interval == 10.0
    assert isinstance(config.cleanup_interval, float)


def test_load_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_config(path) == RegistryConfig()


def test_unknown_store_is_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("store: carrier-pigeon\n")

    with pytest.raises(ValueError, match="carrier-pigeon"):
        load_config(path)


def test_env_overrides():
    config = apply_env_overrides(RegistryConfig(), {
        "ROLLCALL_STORE": "event",
        "ROLLCALL_EVENT_STORE_URL": "redis://localhost:6379/0",
        "ROLLCALL_NAMESPACE": "alice",
    })

    assert config.store == "event"
    assert config.event_store_url == "redis://localhost:6379/0"
    assert config.namespace == "alice"


def test_merge_cli_args_only_overrides_given_values():
    config = RegistryConfig(registry_path="/from/file.json", namespace="file-ns")
    args = argparse.Namespace(registry_path=None, namespace="cli-ns", store="http")

    merge_cli_args(config, args)

    assert config.registry_path == "/from/file.json"
    assert config.namespace == "cli-ns"
    assert config.store == "http"


def test_default_config_reads_file_named_by_env(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text("retry_delay: 0.25\n")

    config = default_config({"ROLLCALL_CONFIG": str(path), "ROLLCALL_STORE": "file"})

    assert config.retry_delay == 0.25
    assert config.store == "file"


def test_config_to_yaml_round_trips(tmp_path):
    config = RegistryConfig(store="file", namespace=None, retry_attempts=7)
    text = config_to_yaml(config)
    path = tmp_path / "out.yaml"
    path.write_text(text)

    assert "namespace" not in yaml.safe_load(text)
    assert load_config(path) == config


def test_update_config_returns_validated_copy():
    config = RegistryConfig()

    updated = update_config(config, cache_ttl="1.5", namespace="ops")

    assert updated.cache_ttl == 1.5
    assert updated.namespace == "ops"
    assert config.namespace is None
    with pytest.raises(ValueError, match="nope"):
        update_config(config, nope=True)
    with pytest.raises(ValueError):
        update_config(config, store="tape")
