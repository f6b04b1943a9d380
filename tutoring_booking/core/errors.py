from __future__ import annotations

from typing import Any


class BookingEngineError(Exception):
    """Base for every error the booking engine reports to its callers."""

    code = 'INTERNAL_ERROR'
    status_code = 500

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            'error': type(self).__name__,
            'code': self.code,
            'message': self.message,
            'detail': self.detail,
        }


class ValidationError(BookingEngineError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class BusinessRuleError(BookingEngineError):
    code = 'BUSINESS_RULE_ERROR'
    status_code = 409

    # Client-side timing or state mistakes rather than contention on a resource.
    _BAD_REQUEST_KINDS = frozenset({'PAST_SLOT_BOOKING', 'CANCELLATION_TIME_LIMIT', 'INVALID_BOOKING_STATUS'})

    def __init__(self, rule_kind: str, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)
        self.rule_kind = rule_kind
        if rule_kind in self._BAD_REQUEST_KINDS:
            self.status_code = 400

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload['rule_kind'] = self.rule_kind
        return payload


class NotFoundError(BookingEngineError):
    code = 'NOT_FOUND'
    status_code = 404

    def __init__(self, message: str = 'Resource not found', *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)


class AuthorizationError(BookingEngineError):
    code = 'AUTHORIZATION_ERROR'
    status_code = 403

    def __init__(self, message: str = 'Access denied', *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)


class ConflictError(BookingEngineError):
    code = 'CONFLICT_ERROR'
    status_code = 409


class RateLimitError(BookingEngineError):
    code = 'RATE_LIMIT_ERROR'
    status_code = 429

    def __init__(self, message: str = 'Too many requests', *, retry_after: int = 60) -> None:
        super().__init__(message, detail={'retry_after': retry_after})
        self.retry_after = retry_after
