"""Service records and the documents they are persisted as.

Python attributes are snake_case; the persisted and wire documents use the
camelCase keys shared with every other process reading the registry.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ServiceStatus(Enum):
    """Service lifecycle status"""
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def valid_pid(pid: Any) -> Optional[int]:
    """Return *pid* as an int if it can identify a process, else None."""
    if isinstance(pid, bool):
        return None
    try:
        pid = int(pid)
    except (TypeError, ValueError):
        return None
    return pid if pid > 0 else None


def build_health_url(port: int, health_path: Optional[str]) -> Optional[str]:
    if not health_path:
        return None
    return f"http://localhost:{port}{health_path}"


@dataclass
class ServiceRecord:
    """One registered service."""
    name: str
    port: int
    process_id: Optional[int] = None
    status: str = ServiceStatus.RUNNING.value
    registered_at: str = field(default_factory=now_iso)
    health_path: Optional[str] = None
    health_check_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_health_check: Optional[str] = None
    is_healthy: Optional[bool] = None

    def __post_init__(self):
        if self.health_check_url is None:
            self.health_check_url = build_health_url(self.port, self.health_path)
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def create(cls, name: str, port: int, process_id: Optional[int] = None,
               health_path: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> 'ServiceRecord':
        """Build a freshly registered record."""
        now = now_iso()
        return cls(
            name=name,
            port=int(port),
            process_id=valid_pid(process_id),
            status=ServiceStatus.RUNNING.value,
            registered_at=now,
            health_path=health_path,
            metadata=dict(metadata or {}),
            last_health_check=now,
            is_healthy=True,
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        registered = parse_timestamp(self.registered_at)
        if registered is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return (now - registered).total_seconds()

    def with_health(self, is_healthy: bool) -> 'ServiceRecord':
        return replace(
            self,
            metadata=dict(self.metadata),
            is_healthy=is_healthy,
            last_health_check=now_iso(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase document form, omitting unset optionals."""
        data: Dict[str, Any] = {
            "name": self.name,
            "port": self.port,
            "status": self.status,
            "registeredAt": self.registered_at,
            "metadata": dict(self.metadata),
        }
        optional = {
            "processId": self.process_id,
            "healthPath": self.health_path,
            "healthCheckUrl": self.health_check_url,
            "lastHealthCheck": self.last_health_check,
            "isHealthy": self.is_healthy,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceRecord':
        """Create from a document; unknown keys are ignored."""
        is_healthy = data.get("isHealthy")
        return cls(
            name=data["name"],
            port=int(data["port"]),
            process_id=valid_pid(data.get("processId")),
            status=data.get("status") or ServiceStatus.UNKNOWN.value,
            registered_at=data.get("registeredAt") or now_iso(),
            health_path=data.get("healthPath"),
            health_check_url=data.get("healthCheckUrl"),
            metadata=dict(data.get("metadata") or {}),
            last_health_check=data.get("lastHealthCheck"),
            is_healthy=None if is_healthy is None else bool(is_healthy),
        )


@dataclass
class RegistrySnapshot:
    """The full record set; unit of read and write for the file store."""
    services: Dict[str, ServiceRecord] = field(default_factory=dict)
    last_updated: str = field(default_factory=now_iso)

    @classmethod
    def empty(cls) -> 'RegistrySnapshot':
        return cls()

    def touch(self) -> None:
        self.last_updated = now_iso()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "services": {name: rec.to_dict() for name, rec in self.services.items()},
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistrySnapshot':
        if not isinstance(data, dict):
            raise ValueError("registry document must be a JSON object")
        raw = data.get("services") or {}
        services = {}
        for name, entry in raw.items():
            entry = dict(entry)
            entry.setdefault("name", name)
            services[name] = ServiceRecord.from_dict(entry)
        return cls(services=services, last_updated=data.get("lastUpdated") or now_iso())


@dataclass
class PresenceRecord:
    """Disconnect-aware liveness marker kept beside a service record."""
    online: bool = True
    last_seen: str = field(default_factory=now_iso)
    process_id: Optional[int] = None
    namespace: Optional[str] = None
    hostname: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "lastSeen": self.last_seen,
            "processId": self.process_id,
            "namespace": self.namespace,
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PresenceRecord':
        return cls(
            online=bool(data.get("online", False)),
            last_seen=data.get("lastSeen") or now_iso(),
            process_id=valid_pid(data.get("processId")),
            namespace=data.get("namespace"),
            hostname=data.get("hostname"),
        )
