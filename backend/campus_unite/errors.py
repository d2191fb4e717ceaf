"""Error taxonomy shared by the store, the moderation workflow and the ranking engine.

Every error carries a stable machine ``code`` and the HTTP status the transport layer
answers with. ``UpstreamUnavailable`` is the only recoverable one: the ranking engine
catches it and falls back to its built-in scorer, so it never reaches a client.
"""

from typing import Any


class CampusUniteError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}


class ValidationError(CampusUniteError):
    code = "validation_error"
    status_code = 400

    def __init__(self, violations: list[dict[str, str]], message: str | None = None):
        self.violations = list(violations)
        fields = ", ".join(v["field"] for v in self.violations)
        super().__init__(message or f"Invalid fields: {fields}")

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["errors"] = self.violations
        return payload


class NotFound(CampusUniteError):
    code = "not_found"
    status_code = 404


class Forbidden(CampusUniteError):
    code = "forbidden"
    status_code = 403


class InvalidTransition(CampusUniteError):
    code = "invalid_transition"
    status_code = 409


class CapacityExceeded(CampusUniteError):
    code = "capacity_exceeded"
    status_code = 409


class Conflict(CampusUniteError):
    code = "conflict"
    status_code = 409


class UpstreamUnavailable(CampusUniteError):
    code = "upstream_unavailable"
    status_code = 503
