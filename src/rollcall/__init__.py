"""rollcall: a service registry for small local development ecosystems."""

__version__ = '0.1.0'

from .registry import (
    HealthCheckFailedError,
    RegistryError,
    ServiceNotFoundError,
    ServiceRecord,
    ServiceRegistry,
    StoreUnavailableError,
    UnsupportedOperationError,
)
from .config import RegistryConfig

__all__ = [
    'ServiceRegistry',
    'ServiceRecord',
    'RegistryConfig',
    'RegistryError',
    'ServiceNotFoundError',
    'StoreUnavailableError',
    'HealthCheckFailedError',
    'UnsupportedOperationError',
]
