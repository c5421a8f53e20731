"""
Error taxonomy for SIREN.

Every failure the core reports is a ``SirenError`` subclass with a stable
machine-readable ``kind`` so callers can pick a message without matching on
text. ``status_code`` is the HTTP status the API layer renders it with.
"""

from typing import Dict, Optional


class SirenError(Exception):
    kind = "Error"
    status_code = 400

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.kind
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, object]:
        return {"kind": self.kind, "detail": self.detail, "errors": {}}


class ValidationError(SirenError):
    kind = "ValidationError"
    status_code = 422

    def __init__(self, fields: Dict[str, str], detail: Optional[str] = None):
        self.fields = dict(fields)
        super().__init__(detail or "Invalid input: " + ", ".join(sorted(self.fields)))

    def to_dict(self) -> Dict[str, object]:
        return {"kind": self.kind, "detail": self.detail, "errors": self.fields}


class InvalidCredentials(SirenError):
    kind = "InvalidCredentials"
    status_code = 401


class RoleMismatch(SirenError):
    kind = "RoleMismatch"
    status_code = 401


class Unauthenticated(SirenError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(SirenError):
    kind = "Forbidden"
    status_code = 403


class NotFound(SirenError):
    kind = "NotFound"
    status_code = 404


class InvalidTransition(SirenError):
    kind = "InvalidTransition"
    status_code = 409


class AlreadyAssigned(SirenError):
    kind = "AlreadyAssigned"
    status_code = 409


class Conflict(SirenError):
    """A concurrent writer changed the entity first, or a unique key clashed."""

    kind = "Conflict"
    status_code = 409


class StorageError(SirenError):
    kind = "StorageError"
    status_code = 503
