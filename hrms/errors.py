from __future__ import annotations

from typing import Dict, Optional


class ServiceError(RuntimeError):
    """Recoverable service error scoped to a single request."""

    status_code = 500
    code = "server_error"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class MissingTenant(ServiceError):
    """No company code was resolved for the caller."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Company code not found in request"):
        super().__init__(message)


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Feedback not found"):
        super().__init__(message)


class InvalidRequest(ServiceError):
    """Malformed input. `errors` maps field names to messages when known."""

    status_code = 400
    code = "invalid_request"

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class StorageUnavailable(ServiceError):
    status_code = 503
    code = "storage_unavailable"
