"""
Service Registry

This package provides:
1. ServiceRegistry: the facade; picks a record store once and delegates to it
2. FileRegistry: JSON snapshot file shared by local processes
3. HttpRegistry: read-only client of a remote snapshot endpoint
4. EventStoreRegistry: presence-aware registry on an event store, with file fallback
"""

from .errors import (
    HealthCheckFailedError,
    RegistryError,
    ServiceNotFoundError,
    StoreUnavailableError,
    UnsupportedOperationError,
)
from .models import PresenceRecord, RegistrySnapshot, ServiceRecord, ServiceStatus
from .namespace import FALLBACK_NAMESPACE, NamespaceResolver, sanitize_namespace
from .event_store import EventStore, MemoryEventHub, MemoryEventStore, RedisEventStore
from .file_registry import FileRegistry
from .http_registry import HttpRegistry
from .event_registry import EventStoreRegistry
from .facade import ServiceRegistry, create_backend, detect_store_kind

__all__ = [
    'ServiceRegistry',
    'FileRegistry',
    'HttpRegistry',
    'EventStoreRegistry',
    'EventStore',
    'MemoryEventHub',
    'MemoryEventStore',
    'RedisEventStore',
    'ServiceRecord',
    'RegistrySnapshot',
    'PresenceRecord',
    'ServiceStatus',
    'NamespaceResolver',
    'sanitize_namespace',
    'FALLBACK_NAMESPACE',
    'RegistryError',
    'ServiceNotFoundError',
    'StoreUnavailableError',
    'HealthCheckFailedError',
    'UnsupportedOperationError',
    'create_backend',
    'detect_store_kind',
]
