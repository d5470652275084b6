"""Identifier generation."""

import uuid
from datetime import datetime

from storefront_billing.utils.clock import epoch_millis


def new_id() -> str:
    """Random row identifier (32 hex characters)."""
    return uuid.uuid4().hex


def trial_subscription_id(store_id: str, now: datetime) -> str:
    """Identifier for an automatic trial: ``trial_{store_id}_{epoch millis}``."""
    return f"trial_{store_id}_{epoch_millis(now)}"
