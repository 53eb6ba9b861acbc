from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class MalformedRecordError(ValueError):
    """Raised when a raw feed record lacks a field needed to compute its identity."""

    def __init__(self, message: str, *, field: str = "", external_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.external_id = external_id

    def as_dict(self) -> dict[str, object]:
        return {
            "reason": "malformed_record",
            "message": self.message,
            "field": self.field,
            "external_id": self.external_id,
        }


class FeedUnavailableError(RuntimeError):
    """Network or timeout failure reaching an upstream feed; nothing is persisted."""

    def __init__(self, message: str, *, feed_type: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.feed_type = feed_type
        self.status_code = status_code


class PublishTimeoutError(RuntimeError):
    pass


def confirmation_required(message: str, *, details: dict[str, object] | None = None) -> ApiError:
    return ApiError(
        code="CONFIRMATION_REQUIRED",
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
        details=details,
    )
