"""
Domain errors raised by the service modules and mapped to HTTP responses in main.py.
"""
from typing import Any, Dict, List, Optional


class CatalogError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message}
        body.update(self.details)
        return body


class NotFoundError(CatalogError):
    status_code = 404


class ConflictError(CatalogError):
    """Duplicate unique value, or a delete blocked by documents that still reference the target."""
    status_code = 409


class ValidationFailed(CatalogError):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, {"errors": list(errors or [])})
        self.errors = list(errors or [])
