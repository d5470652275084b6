"""User notifications produced by lifecycle changes.

Notification delivery is best-effort: ``create_notification`` never raises,
it logs and returns an empty id instead.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from storefront_billing.logging_config import get_logger
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.utils.clock import to_iso, utc_now

logger = get_logger(__name__)

NOTIFICATIONS_TABLE = "notifications"


class NotificationSink(ABC):
    """Destination for user-facing notifications."""

    @abstractmethod
    async def create_notification(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create a notification and return its id ("" when it could not be created)."""


class DataStoreNotificationSink(NotificationSink):
    """Writes notifications to the ``notifications`` table."""

    def __init__(self, store: DataStore):
        self._store = store

    async def create_notification(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        try:
            rows = await self._store.insert(
                NOTIFICATIONS_TABLE,
                [
                    {
                        "user_id": user_id,
                        "type": notification_type,
                        "title": title,
                        "content": content,
                        "metadata": metadata or {},
                        "read": False,
                        "created_at": to_iso(utc_now()),
                    }
                ],
            )
        except Exception as e:
            logger.warning(
                "notification_create_failed",
                user_id=user_id,
                notification_type=notification_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ""

        notification_id = str(rows[0]["id"]) if rows else ""
        logger.info("notification_created", user_id=user_id, notification_type=notification_type, notification_id=notification_id)
        return notification_id
