"""Error taxonomy, normalization and retry helpers.

All failures that cross a component boundary are expressed as ``AppError``
with a category and a retryable flag. Processor (Stripe) and transport
(httpx, asyncio) exceptions are normalized here so callers only ever
reason about categories.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TypeVar

import httpx
import stripe

from storefront_billing.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Broad failure families; category drives retryability and HTTP status."""

    PAYMENT = "payment"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    SERVER = "server"
    CLIENT = "client"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    # Payment
    PAYMENT_CARD_DECLINED = "PAYMENT_CARD_DECLINED"
    PAYMENT_EXPIRED_CARD = "PAYMENT_EXPIRED_CARD"
    PAYMENT_INSUFFICIENT_FUNDS = "PAYMENT_INSUFFICIENT_FUNDS"
    PAYMENT_PROCESSING_ERROR = "PAYMENT_PROCESSING_ERROR"

    # Network
    NETWORK_CONNECTION_ERROR = "NETWORK_CONNECTION_ERROR"
    NETWORK_REQUEST_TIMEOUT = "NETWORK_REQUEST_TIMEOUT"

    # Authentication
    AUTH_UNAUTHORIZED = "AUTH_UNAUTHORIZED"
    AUTH_SESSION_EXPIRED = "AUTH_SESSION_EXPIRED"

    # Validation
    VALIDATION_REQUIRED_FIELD = "VALIDATION_REQUIRED_FIELD"
    VALIDATION_ENTITY_EXISTS = "VALIDATION_ENTITY_EXISTS"
    VALIDATION_ENTITY_NOT_FOUND = "VALIDATION_ENTITY_NOT_FOUND"
    VALIDATION_INVALID_TRANSITION = "VALIDATION_INVALID_TRANSITION"

    # Server
    SERVER_DATABASE_ERROR = "SERVER_DATABASE_ERROR"
    SERVER_PROJECTION_ERROR = "SERVER_PROJECTION_ERROR"
    SERVER_INTERNAL_ERROR = "SERVER_INTERNAL_ERROR"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AppError(Exception):
    """Structured application error.

    Args:
        code: Machine-readable error code
        message: Human-readable description
        category: Failure family
        details: Extra structured context
        original_error: Exception this error was derived from
        retryable: Whether repeating the operation may succeed
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.category = category
        self.details = details or {}
        self.original_error = original_error
        self.retryable = retryable
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and logs."""
        return {
            "code": self.code.value,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"AppError(code={self.code.value}, category={self.category.value}, message={self.message!r})"


def validation_error(code: ErrorCode, message: str, **details: Any) -> AppError:
    """Build a non-retryable validation error."""
    return AppError(code, message, ErrorCategory.VALIDATION, details=details)


def database_error(message: str, original_error: Optional[BaseException] = None, **details: Any) -> AppError:
    """Build a server-side data store error."""
    return AppError(
        ErrorCode.SERVER_DATABASE_ERROR,
        message,
        ErrorCategory.SERVER,
        details=details,
        original_error=original_error,
    )


_CARD_ERROR_CODES = {
    "card_declined": ErrorCode.PAYMENT_CARD_DECLINED,
    "expired_card": ErrorCode.PAYMENT_EXPIRED_CARD,
    "insufficient_funds": ErrorCode.PAYMENT_INSUFFICIENT_FUNDS,
}


def classify_stripe_error(error: stripe.StripeError) -> AppError:
    """Map a Stripe SDK exception onto the error taxonomy.

    Declined, expired and underfunded cards are final. Connection and API
    failures on the processor side are worth retrying.
    """
    message = getattr(error, "user_message", None) or str(error)

    if isinstance(error, stripe.CardError):
        decline_code = getattr(error, "decline_code", None)
        code = _CARD_ERROR_CODES.get(decline_code) or _CARD_ERROR_CODES.get(error.code)
        return AppError(
            code or ErrorCode.PAYMENT_PROCESSING_ERROR,
            message,
            ErrorCategory.PAYMENT,
            details={"stripe_code": error.code, "decline_code": decline_code},
            original_error=error,
            retryable=False,
        )

    if isinstance(error, stripe.APIConnectionError):
        return AppError(
            ErrorCode.NETWORK_CONNECTION_ERROR,
            message,
            ErrorCategory.NETWORK,
            original_error=error,
            retryable=True,
        )

    if isinstance(error, stripe.AuthenticationError):
        return AppError(
            ErrorCode.AUTH_UNAUTHORIZED,
            message,
            ErrorCategory.AUTHENTICATION,
            original_error=error,
        )

    if isinstance(error, stripe.InvalidRequestError):
        lowered = message.lower()
        if "no such" in lowered or "not found" in lowered:
            return AppError(
                ErrorCode.VALIDATION_ENTITY_NOT_FOUND,
                message,
                ErrorCategory.VALIDATION,
                details={"param": getattr(error, "param", None)},
                original_error=error,
            )
        return AppError(
            ErrorCode.VALIDATION_REQUIRED_FIELD,
            message,
            ErrorCategory.VALIDATION,
            details={"param": getattr(error, "param", None)},
            original_error=error,
        )

    if isinstance(error, (stripe.APIError, stripe.RateLimitError)):
        return AppError(
            ErrorCode.PAYMENT_PROCESSING_ERROR,
            message,
            ErrorCategory.PAYMENT,
            original_error=error,
            retryable=True,
        )

    return AppError(
        ErrorCode.PAYMENT_PROCESSING_ERROR,
        message,
        ErrorCategory.PAYMENT,
        original_error=error,
    )


def normalize_error(error: BaseException) -> AppError:
    """Convert any exception into an ``AppError``.

    Args:
        error: Exception raised by an operation

    Returns:
        The same error if already an AppError, otherwise a classified wrapper
    """
    if isinstance(error, AppError):
        return error

    if isinstance(error, stripe.StripeError):
        return classify_stripe_error(error)

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return AppError(
            ErrorCode.NETWORK_REQUEST_TIMEOUT,
            str(error) or "Request timed out",
            ErrorCategory.NETWORK,
            original_error=error,
            retryable=True,
        )

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return AppError(
            ErrorCode.NETWORK_CONNECTION_ERROR,
            str(error) or "Connection failed",
            ErrorCategory.NETWORK,
            original_error=error,
            retryable=True,
        )

    message = str(error) or type(error).__name__
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return AppError(
            ErrorCode.NETWORK_REQUEST_TIMEOUT,
            message,
            ErrorCategory.NETWORK,
            original_error=error,
            retryable=True,
        )
    if "network" in lowered or "connection" in lowered:
        return AppError(
            ErrorCode.NETWORK_CONNECTION_ERROR,
            message,
            ErrorCategory.NETWORK,
            original_error=error,
            retryable=True,
        )

    return AppError(
        ErrorCode.UNKNOWN_ERROR,
        message,
        ErrorCategory.UNKNOWN,
        original_error=error,
    )


async def with_timeout(operation: Awaitable[T], seconds: float, operation_name: str = "operation") -> T:
    """Await ``operation`` and fail with a retryable timeout error after ``seconds``."""
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise AppError(
            ErrorCode.NETWORK_REQUEST_TIMEOUT,
            f"{operation_name} timed out after {seconds}s",
            ErrorCategory.NETWORK,
            details={"operation": operation_name, "timeout_seconds": seconds},
            original_error=e,
            retryable=True,
        ) from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Optional[Callable[[AppError, int], None]] = None,
    should_retry: Optional[Callable[[AppError], bool]] = None,
) -> T:
    """Run ``operation`` with exponential backoff.

    The operation runs at most ``max_retries + 1`` times. Before retry ``n``
    (0-based) the helper sleeps ``base_delay * 2**n`` seconds.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Initial delay in seconds
        on_retry: Observer called with (error, attempt) before each retry
        should_retry: Predicate on the normalized error; defaults to ``error.retryable``

    Returns:
        The operation's result

    Raises:
        AppError: The last normalized failure
    """
    predicate = should_retry or (lambda err: err.retryable)
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            error = normalize_error(e)
            if attempt >= max_retries or not predicate(error):
                if error is e:
                    raise
                raise error from e

            delay = base_delay * (2 ** attempt)
            logger.warning(
                "operation_retrying",
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_seconds=delay,
                error_code=error.code.value,
            )
            if on_retry is not None:
                on_retry(error, attempt)
            await asyncio.sleep(delay)
            attempt += 1
