"""Registry error types.

A ``None`` or empty result means "definitely absent"; a raised
:class:`RegistryError` means "could not determine".
"""

from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base class for registry failures."""

    code = "REGISTRY_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ServiceNotFoundError(RegistryError):
    code = "SERVICE_NOT_FOUND"

    def __init__(self, name: str):
        super().__init__(f"Service '{name}' not found in registry", {"name": name})
        self.name = name


class StoreUnavailableError(RegistryError):
    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str, cause: Optional[BaseException] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class HealthCheckFailedError(RegistryError):
    code = "HEALTH_CHECK_FAILED"

    def __init__(self, name: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Health check failed for service '{name}' after {attempts} attempt(s)",
            {"name": name, "attempts": attempts},
        )
        self.name = name
        self.attempts = attempts
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class UnsupportedOperationError(RegistryError):
    code = "UNSUPPORTED_OPERATION"

    def __init__(self, operation: str, store: str, reason: str = ""):
        message = f"'{operation}' is not supported by the {store} registry"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"operation": operation, "store": store})
        self.operation = operation
        self.store = store
