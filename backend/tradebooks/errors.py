# Overview: Typed error hierarchy shared by services, routes, and the CLI.
"""
Engine errors

Every failure a caller can act on is raised as an EngineError subclass with a
machine-readable `code`, the HTTP status the API maps it to, and structured
`details`. Routes never parse messages; they branch on type or code.

    EngineError
    +-- NotFound               (404)
    +-- InvalidState           (409)
    +-- ValidationFailed       (422)  aggregated `errors` list
    +-- BusinessRuleViolation  (422)  `reason` from BUSINESS_RULE_REASONS
    +-- ConsistencyConflict    (409)  retries exhausted on a concurrent write
    +-- ImmutableRecordError   (500)  update/delete of an append-only row (a bug, never user input)
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


# =============================================================================
# BUSINESS RULE REASONS
# =============================================================================

INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
CREDIT_LIMIT_EXCEEDED = "CREDIT_LIMIT_EXCEEDED"
ITEM_INACTIVE = "ITEM_INACTIVE"
PARTY_INACTIVE = "PARTY_INACTIVE"
DUPLICATE_SUPPLIER_BILL = "DUPLICATE_SUPPLIER_BILL"

BUSINESS_RULE_REASONS = {
    INSUFFICIENT_STOCK,
    CREDIT_LIMIT_EXCEEDED,
    ITEM_INACTIVE,
    PARTY_INACTIVE,
    DUPLICATE_SUPPLIER_BILL,
}


class EngineError(Exception):
    code = "ENGINE_ERROR"
    http_status = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class NotFound(EngineError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, identifier: Any):
        super().__init__(
            f"{entity} {identifier} not found",
            {"entity": entity, "id": identifier},
        )
        self.entity = entity
        self.identifier = identifier


class InvalidState(EngineError):
    code = "INVALID_STATE"
    http_status = 409


class ValidationFailed(EngineError):
    """Input rejected; `errors` carries one message per offending field or line."""

    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Iterable[str]] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.errors = list(errors or [])
        merged = dict(details or {})
        merged["errors"] = self.errors
        super().__init__(message, merged)


class BusinessRuleViolation(EngineError):
    code = "BUSINESS_RULE_VIOLATION"
    http_status = 422

    def __init__(self, reason: str, message: str, details: Optional[dict[str, Any]] = None):
        if reason not in BUSINESS_RULE_REASONS:
            raise ValueError(f"Unknown business rule reason: {reason}")
        super().__init__(message, details)
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class ConsistencyConflict(EngineError):
    code = "CONSISTENCY_CONFLICT"
    http_status = 409


class ImmutableRecordError(EngineError):
    code = "IMMUTABLE_RECORD"
    http_status = 500

    def __init__(self, entity: str, identifier: Any, operation: str):
        super().__init__(
            f"{entity} {identifier} is append-only; {operation} is not allowed",
            {"entity": entity, "id": identifier, "operation": operation},
        )
