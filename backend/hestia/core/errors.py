"""
Domain error taxonomy
=====================
Every service operation raises one of these; the API layer maps them to
HTTP status codes in ``hestia.main``.

  ValidationError         422  malformed or missing input
  NotFound                404  policy / actor / investigation / contract missing
  Forbidden               403  caller lacks the capability or scope
  StateConflict           409  lifecycle precondition not met, or a race was detected
  ExternalServiceFailure  502  notification or storage collaborator failed
  InvariantViolation      500  aggregate invariant broken; the transaction is aborted
"""
from __future__ import annotations

from typing import Any


class HestiaError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, "context": self.details}


class ValidationError(HestiaError):
    code = "validation_error"
    http_status = 422


class NotFound(HestiaError):
    code = "not_found"
    http_status = 404


class Forbidden(HestiaError):
    code = "forbidden"
    http_status = 403


class StateConflict(HestiaError):
    code = "state_conflict"
    http_status = 409


class ExternalServiceFailure(HestiaError):
    code = "external_service_failure"
    http_status = 502

    def __init__(self, message: str, *, service: str, **details: Any) -> None:
        super().__init__(message, service=service, **details)
        self.service = service


class InvariantViolation(HestiaError):
    code = "invariant_violation"
    http_status = 500
