"""Wiring of the service graph.

One ``BillingServices`` instance is built per application and handed to
request handlers through ``app.state``; nothing is process-global.
"""

from typing import Optional

from storefront_billing.logging_config import get_logger
from storefront_billing.metrics import BillingMetrics
from storefront_billing.models.settings import BillingSettings
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.repositories.memory_store import InMemoryDataStore
from storefront_billing.repositories.plan_repository import PlanRepository
from storefront_billing.repositories.rest_store import RestDataStore
from storefront_billing.services.billing_gateway import BillingGateway, create_gateway
from storefront_billing.services.billing_sync import BillingSync
from storefront_billing.services.cache import SubscriptionCacheManager, TTLCache
from storefront_billing.services.event_dispatcher import EventDispatcher
from storefront_billing.services.event_store import SubscriptionEventStore
from storefront_billing.services.notification_sink import DataStoreNotificationSink
from storefront_billing.services.state_machine import SubscriptionStateMachine
from storefront_billing.services.subscription_service import SubscriptionService
from storefront_billing.services.transaction_manager import TransactionManager

logger = get_logger(__name__)


def create_data_store(settings: BillingSettings) -> DataStore:
    config = settings.data_store
    if config.backend == "rest":
        return RestDataStore(config.url, config.api_key, timeout=config.timeout_seconds)
    if config.backend == "memory":
        return InMemoryDataStore()
    raise ValueError(f"Unknown data store backend: {config.backend}")


class BillingServices:
    """Every collaborator of the subscription lifecycle, built from settings.

    Args:
        settings: Validated billing settings
        data_store: Store to use instead of the configured backend
        gateway: Billing gateway to use instead of the configured one
        metrics: Metrics sink (a fresh private registry if omitted)
        dispatcher: Event publisher (built from ``settings.pubsub`` if omitted)
    """

    def __init__(
        self,
        settings: BillingSettings,
        data_store: Optional[DataStore] = None,
        gateway: Optional[BillingGateway] = None,
        metrics: Optional[BillingMetrics] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.settings = settings
        self.metrics = metrics or BillingMetrics()
        self.store = data_store or create_data_store(settings)
        self.plans = PlanRepository(settings.plans)
        self.gateway = gateway or create_gateway(settings.billing_gateway)
        self.dispatcher = dispatcher or EventDispatcher(settings.pubsub)

        cache_config = settings.cache
        self.cache = SubscriptionCacheManager(
            TTLCache(
                name="subscriptions",
                ttl=cache_config.ttl_seconds,
                max_size=cache_config.max_size,
                cleanup_interval=cache_config.cleanup_interval_seconds,
                metrics=self.metrics,
            )
        )

        self.transactions = TransactionManager(self.store, metrics=self.metrics)
        self.event_store = SubscriptionEventStore(self.store, dispatcher=self.dispatcher)
        self.notifications = DataStoreNotificationSink(self.store)
        self.state_machine = SubscriptionStateMachine(
            self.store,
            self.event_store,
            transaction_manager=self.transactions,
            notifications=self.notifications,
            cache=self.cache,
            plans=self.plans,
            metrics=self.metrics,
        )
        self.subscriptions = SubscriptionService(
            self.store,
            self.state_machine,
            self.event_store,
            self.cache,
            plans=self.plans,
            gateway=self.gateway,
            config=settings.subscription,
            metrics=self.metrics,
        )
        self.billing_sync = BillingSync(self.store, self.state_machine, self.gateway, cache=self.cache)

        logger.info(
            "billing_services_built",
            data_store=type(self.store).__name__,
            gateway_enabled=self.gateway.is_enabled(),
            pubsub_enabled=self.dispatcher.is_enabled(),
            plans=len(self.plans),
        )

    async def close(self) -> None:
        self.dispatcher.shutdown()
        await self.store.close()
