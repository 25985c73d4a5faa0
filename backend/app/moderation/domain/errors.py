"""Error taxonomy shared by every moderation operation."""

from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from fastapi import status

from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModerationErrorCode(str, Enum):
    DATABASE_ERROR = "DATABASE_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    INVALID_ACTION = "INVALID_ACTION"


_STATUS_BY_CODE: dict[ModerationErrorCode, int] = {
    ModerationErrorCode.DATABASE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ModerationErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ModerationErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ModerationErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ModerationErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ModerationErrorCode.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
    ModerationErrorCode.INSUFFICIENT_PERMISSIONS: status.HTTP_403_FORBIDDEN,
    ModerationErrorCode.INVALID_ACTION: status.HTTP_400_BAD_REQUEST,
}


class ModerationError(Exception):
    """Typed failure carrying a machine-checkable code."""

    def __init__(
        self,
        message: str,
        code: ModerationErrorCode,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details: dict[str, Any] = dict(details or {})

    @property
    def status_code(self) -> int:
        return _STATUS_BY_CODE.get(self.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


class RepositoryError(Exception):
    """Base class for failures raised by the storage adapters."""


class ImmutableRecordError(RepositoryError):
    """Raised when a write would alter a reversal record that is already sealed."""


class StaleVersionError(RepositoryError):
    """Raised when a compare-and-set write loses against a concurrent writer."""


class RecordStateError(RepositoryError):
    """Raised when a write would move a record backwards through its lifecycle."""


def validation_error(message: str, **details: Any) -> ModerationError:
    return ModerationError(message, ModerationErrorCode.VALIDATION_ERROR, details)


def not_found(message: str, **details: Any) -> ModerationError:
    return ModerationError(message, ModerationErrorCode.NOT_FOUND, details)


def moderation_operation(
    description: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Wrap an async service method so only ``ModerationError`` ever escapes.

    ``description`` completes the sentence "An unexpected error occurred while ...".
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except ModerationError as exc:
                obs_metrics.MOD_OPERATION_ERRORS_TOTAL.labels(operation=func.__name__, code=exc.code.value).inc()
                raise
            except Exception as exc:
                logger.exception("moderation operation failed", extra={"operation": func.__name__})
                obs_metrics.MOD_OPERATION_ERRORS_TOTAL.labels(
                    operation=func.__name__, code=ModerationErrorCode.DATABASE_ERROR.value
                ).inc()
                raise ModerationError(
                    f"An unexpected error occurred while {description}",
                    ModerationErrorCode.DATABASE_ERROR,
                    {"originalError": repr(exc)},
                ) from exc

        return wrapper

    return decorator
