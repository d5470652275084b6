"""Tests for structured logging configuration and the custom processors."""

import logging

import pytest
import structlog

from storefront_billing.logging_config import (
    APP_NAME,
    add_app_context,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    mask_sensitive_fields,
)


@pytest.fixture(autouse=True)
def cleanup_context():
    clear_context()
    yield
    clear_context()


class TestConfiguration:
    """Test configuring and using the logger."""

    @pytest.mark.parametrize("json_format", [True, False])
    def test_configured_logger_emits(self, json_format):
        configure_logging(log_level="INFO", json_format=json_format)
        get_logger("test.config").info("transition_committed", subscription_id="sub-1")

    def test_level_is_applied_to_stdlib_root(self):
        configure_logging(log_level="WARNING")
        assert logging.getLogger().getEffectiveLevel() <= logging.WARNING

    def test_exception_logging_with_traceback(self):
        configure_logging(log_level="INFO", json_format=True)
        logger = get_logger("test.exceptions")
        try:
            {}["missing"]
        except KeyError as e:
            logger.error("lookup_failed", error=str(e), exc_info=True)


class TestContext:
    """Test request-scoped correlation ids."""

    def test_bind_context(self):
        bind_context(request_id="req-12345", store_id="store-42", subscription_id="sub-1")

        context = structlog.contextvars.get_contextvars()
        assert context == {"request_id": "req-12345", "store_id": "store-42", "subscription_id": "sub-1"}

    def test_clear_context(self):
        bind_context(request_id="req-12345")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_rebinding_overwrites(self):
        bind_context(request_id="req-1")
        bind_context(request_id="req-2", user_id="user-2")
        assert structlog.contextvars.get_contextvars()["request_id"] == "req-2"


class TestProcessors:
    """Test the custom processors."""

    def test_app_context_added(self):
        assert add_app_context(None, "info", {})["app"] == APP_NAME

    def test_credentials_are_masked(self):
        event = mask_sensitive_fields(None, "info", {"api_key": "sk_test_abcd1234", "event": "checkout_created"})

        assert event["api_key"] == "***1234"
        assert event["event"] == "checkout_created"

    def test_empty_credentials_are_left_alone(self):
        assert mask_sensitive_fields(None, "info", {"client_secret": None}) == {"client_secret": None}
