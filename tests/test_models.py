"""Tests for service records and snapshot documents."""

from datetime import datetime, timedelta, timezone

from rollcall.registry.models import (
    PresenceRecord,
    RegistrySnapshot,
    ServiceRecord,
    ServiceStatus,
    valid_pid,
)


def test_create_derives_health_url():
    record = ServiceRecord.create("svc-a", 3000, process_id=1234, health_path="/health")

    assert record.health_check_url == "http://localhost:3000/health"
    assert record.status == ServiceStatus.RUNNING.value
    assert record.is_healthy is True
    assert record.registered_at == record.last_health_check


def test_create_without_health_path_has_no_url():
    record = ServiceRecord.create("svc-b", 3001)

    assert record.health_check_url is None
    assert "healthCheckUrl" not in record.to_dict()
    assert "healthPath" not in record.to_dict()


def test_document_uses_camel_case_keys():
    record = ServiceRecord.create(
        "svc-a", 3000, process_id=1234, health_path="/health", metadata={"role": "api"},
    )
    data = record.to_dict()

    assert data["processId"] == 1234
    assert data["healthPath"] == "/health"
    assert data["healthCheckUrl"] == "http://localhost:3000/health"
    assert data["registeredAt"] == record.registered_at
    assert data["metadata"] == {"role": "api"}


def test_from_dict_coerces_and_ignores_unknown_keys():
    record = ServiceRecord.from_dict({
        "name": "svc",
        "port": "8080",
        "processId": "42",
        "healthPath": "/ready",
        "somethingElse": True,
    })

    assert record.port == 8080
    assert record.process_id == 42
    assert record.health_check_url == "http://localhost:8080/ready"
    assert record.metadata == {}
    assert record.status == ServiceStatus.UNKNOWN.value


def test_invalid_pids_are_treated_as_absent():
    assert valid_pid(None) is None
    assert valid_pid(0) is None
    assert valid_pid(-5) is None
    assert valid_pid("abc") is None
    assert valid_pid(True) is None
    assert valid_pid("17") == 17


def test_age_seconds():
    record = ServiceRecord.create("svc", 1)
    record.registered_at = (datetime.now(timezone.utc) - timedelta(seconds=120)).isoformat()

    assert 119 < record.age_seconds() < 130


def test_unparseable_timestamp_is_never_old():
    record = ServiceRecord.create("svc", 1)
    record.registered_at = "not-a-date"

    assert record.age_seconds() == 0.0


def test_with_health_returns_updated_copy():
    record = ServiceRecord.create("svc", 1, health_path="/health")
    checked = record.with_health(False)

    assert checked.is_healthy is False
    assert record.is_healthy is True
    assert checked.registered_at == record.registered_at


def test_snapshot_document_keys_records_by_name():
    snapshot = RegistrySnapshot.empty()
    snapshot.services["a"] = ServiceRecord.create("a", 1000)
    data = snapshot.to_dict()

    assert set(data) == {"services", "lastUpdated"}
    restored = RegistrySnapshot.from_dict({"services": {"a": {"port": 1000}}, "lastUpdated": "x"})
    assert restored.services["a"].name == "a"
    assert restored.last_updated == "x"


def test_presence_document():
    presence = PresenceRecord(online=True, process_id=7, namespace="ns", hostname="box")
    restored = PresenceRecord.from_dict(presence.to_dict())

    assert restored == presence
    assert PresenceRecord.from_dict({}).online is False
