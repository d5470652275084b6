"""Billing gateway adapter.

The only place that talks to the payment processor. Every call needs a
``BillingSession`` describing the authenticated caller; processor calls are
bounded by a timeout and retried with exponential backoff when the failure is
retryable (network errors, processor-side API errors). Card failures are
final.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from pydantic import BaseModel, Field

from storefront_billing.errors import (
    AppError,
    ErrorCategory,
    ErrorCode,
    validation_error,
    with_retry,
    with_timeout,
)
from storefront_billing.logging_config import get_logger
from storefront_billing.models.settings import BillingGatewayConfig
from storefront_billing.utils.clock import utc_now
from storefront_billing.utils.ids import new_id

logger = get_logger(__name__)


class BillingSession(BaseModel):
    """Authenticated caller context required by every gateway call."""

    user_id: Optional[str] = Field(None, description="Authenticated user")
    store_id: Optional[str] = Field(None, description="Store the caller acts for")
    customer_id: Optional[str] = Field(None, description="Processor customer id")
    email: Optional[str] = Field(None, description="Customer email for new customers")
    expires_at: Optional[datetime] = Field(None, description="Session expiry")


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalSession(BaseModel):
    url: str


class GatewaySubscriptionSnapshot(BaseModel):
    """Processor view of one subscription."""

    external_ref: str
    status: str
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    price_ref: Optional[str] = None


def require_session(session: Optional[BillingSession]) -> BillingSession:
    """Reject missing, anonymous or expired sessions.

    Raises:
        AppError: AUTH_UNAUTHORIZED or AUTH_SESSION_EXPIRED
    """
    if session is None or not session.user_id:
        raise AppError(
            ErrorCode.AUTH_UNAUTHORIZED,
            "An authenticated session is required",
            ErrorCategory.AUTHENTICATION,
        )
    if session.expires_at is not None and session.expires_at <= utc_now():
        raise AppError(
            ErrorCode.AUTH_SESSION_EXPIRED,
            "Session expired, sign in again",
            ErrorCategory.AUTHENTICATION,
            details={"expired_at": session.expires_at.isoformat()},
        )
    return session


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BillingGateway(ABC):
    """Narrow interface to the payment processor."""

    @abstractmethod
    async def create_checkout_session(
        self, session: BillingSession, price_ref: str, store_id: str
    ) -> CheckoutSession:
        pass

    @abstractmethod
    async def create_portal_session(self, session: BillingSession) -> PortalSession:
        pass

    @abstractmethod
    async def fetch_subscription_snapshot(
        self, session: BillingSession, external_ref: str
    ) -> GatewaySubscriptionSnapshot:
        pass

    def is_enabled(self) -> bool:
        return True


class DisabledBillingGateway(BillingGateway):
    """Gateway used when no processor is configured; every call fails cleanly."""

    def _unavailable(self, operation: str) -> AppError:
        return AppError(
            ErrorCode.SERVER_INTERNAL_ERROR,
            f"Billing gateway is disabled ({operation})",
            ErrorCategory.SERVER,
            details={"operation": operation},
        )

    async def create_checkout_session(self, session, price_ref, store_id):
        require_session(session)
        raise self._unavailable("create_checkout_session")

    async def create_portal_session(self, session):
        require_session(session)
        raise self._unavailable("create_portal_session")

    async def fetch_subscription_snapshot(self, session, external_ref):
        require_session(session)
        raise self._unavailable("fetch_subscription_snapshot")

    def is_enabled(self) -> bool:
        return False


class StripeBillingGateway(BillingGateway):
    """Stripe-backed gateway.

    The Stripe SDK is synchronous; calls run in a worker thread so they do not
    block the event loop.

    Args:
        config: Gateway settings (API key, redirect URLs, timeout and retry policy)
    """

    def __init__(self, config: BillingGatewayConfig):
        if not config.api_key:
            raise ValueError("Stripe API key is required when the billing gateway is enabled")
        self._config = config

    async def _call(
        self, operation_name: str, func, *args: Any, idempotent: bool = False, **kwargs: Any
    ) -> Any:
        kwargs["api_key"] = self._config.api_key
        if idempotent:
            # One key per logical call; retries replay it so the processor creates at most one object.
            kwargs["idempotency_key"] = f"{operation_name}-{new_id()}"

        async def attempt():
            return await with_timeout(
                asyncio.to_thread(func, *args, **kwargs),
                self._config.timeout_seconds,
                operation_name,
            )

        def on_retry(error: AppError, attempt_number: int) -> None:
            logger.warning(
                "billing_gateway_retry",
                operation=operation_name,
                attempt=attempt_number + 1,
                error_code=error.code.value,
            )

        try:
            return await with_retry(
                attempt,
                max_retries=self._config.max_retries,
                base_delay=self._config.retry_base_delay,
                on_retry=on_retry,
                should_retry=lambda err: err.retryable
                and err.category in (ErrorCategory.NETWORK, ErrorCategory.PAYMENT),
            )
        except AppError as e:
            logger.error(
                "billing_gateway_call_failed",
                operation=operation_name,
                error_code=e.code.value,
                category=e.category.value,
                error=e.message,
            )
            raise

    async def create_checkout_session(
        self, session: BillingSession, price_ref: str, store_id: str
    ) -> CheckoutSession:
        """Start a subscription checkout for ``store_id`` at ``price_ref``.

        Raises:
            AppError: Auth failure, missing price/store, or processor failure
        """
        session = require_session(session)
        if not price_ref:
            raise validation_error(ErrorCode.VALIDATION_REQUIRED_FIELD, "price_ref is required", field="price_ref")
        if not store_id:
            raise validation_error(ErrorCode.VALIDATION_REQUIRED_FIELD, "store_id is required", field="store_id")

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_ref, "quantity": 1}],
            "success_url": self._config.success_url,
            "cancel_url": self._config.cancel_url,
            "client_reference_id": store_id,
            "metadata": {"store_id": store_id, "user_id": session.user_id},
            "subscription_data": {"metadata": {"store_id": store_id, "user_id": session.user_id}},
        }
        if session.customer_id:
            params["customer"] = session.customer_id
        elif session.email:
            params["customer_email"] = session.email

        checkout = await self._call(
            "create_checkout_session", stripe.checkout.Session.create, idempotent=True, **params
        )
        logger.info(
            "checkout_session_created",
            store_id=store_id,
            user_id=session.user_id,
            session_id=checkout.id,
        )
        return CheckoutSession(session_id=checkout.id, url=getattr(checkout, "url", None))

    async def create_portal_session(self, session: BillingSession) -> PortalSession:
        """Open the customer billing portal for the session's customer."""
        session = require_session(session)
        if not session.customer_id:
            raise validation_error(
                ErrorCode.VALIDATION_ENTITY_NOT_FOUND,
                "No billing customer for this account",
                user_id=session.user_id,
            )
        portal = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            idempotent=True,
            customer=session.customer_id,
            return_url=self._config.portal_return_url,
        )
        logger.info("portal_session_created", user_id=session.user_id, customer_id=session.customer_id)
        return PortalSession(url=portal.url)

    async def fetch_subscription_snapshot(
        self, session: BillingSession, external_ref: str
    ) -> GatewaySubscriptionSnapshot:
        """Current processor state of subscription ``external_ref``."""
        require_session(session)
        if not external_ref:
            raise validation_error(
                ErrorCode.VALIDATION_REQUIRED_FIELD, "external_ref is required", field="external_ref"
            )
        subscription = await self._call(
            "fetch_subscription_snapshot", stripe.Subscription.retrieve, external_ref
        )
        return snapshot_from_stripe(subscription)


def snapshot_from_stripe(subscription: Any) -> GatewaySubscriptionSnapshot:
    """Convert a Stripe Subscription object (or its dict form) into a snapshot."""
    data = subscription if isinstance(subscription, dict) else subscription.to_dict()
    price_ref = None
    items = (data.get("items") or {}).get("data") or []
    if items:
        price_ref = (items[0].get("price") or {}).get("id")

    # Period bounds moved from the subscription to its items in newer API versions.
    period_start = data.get("current_period_start")
    period_end = data.get("current_period_end")
    if period_start is None and items:
        period_start = items[0].get("current_period_start")
        period_end = items[0].get("current_period_end")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return GatewaySubscriptionSnapshot(
        external_ref=data["id"],
        status=data["status"],
        trial_end=_timestamp(data.get("trial_end")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        canceled_at=_timestamp(data.get("canceled_at")),
        customer_id=customer,
        price_ref=price_ref,
    )


def create_gateway(config: BillingGatewayConfig) -> BillingGateway:
    """Gateway for the configured mode."""
    if config.enabled:
        return StripeBillingGateway(config)
    logger.info("billing_gateway_disabled")
    return DisabledBillingGateway()
