from typing import Any, Dict


class PyqVaultError(Exception):
    """Base error carrying a machine-readable kind and an HTTP status"""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "kind": self.kind, "message": self.message}


class ValidationError(PyqVaultError):
    kind = "validation_error"
    status_code = 400


class AuthenticationError(PyqVaultError):
    kind = "unauthorized"
    status_code = 401


class NotFoundError(PyqVaultError):
    kind = "not_found"
    status_code = 404


class ModerationRejected(PyqVaultError):
    """Raised per file; never surfaced as a request failure on its own"""

    kind = "moderation_rejected"
    status_code = 422


class ExternalServiceFailure(PyqVaultError):
    kind = "external_service_failure"
    status_code = 502


class StorageError(ExternalServiceFailure):
    """A single object could not be written or removed"""

    kind = "storage_failed"


class StorageUnavailableError(StorageError):
    """The storage backend itself is unreachable; fatal for a whole batch"""

    kind = "storage_unavailable"
    status_code = 503


class PersistenceError(PyqVaultError):
    kind = "persistence_error"
    status_code = 500
