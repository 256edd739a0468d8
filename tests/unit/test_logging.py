"""Tests for structured logging configuration and context binding."""

import os

import pytest
import structlog

from membership_subscriptions.logging_config import (
    APP_NAME,
    add_app_context,
    bind_context,
    clear_context,
    configure_logging,
    drop_debug_in_production,
    get_logger,
    mask_payroll_numbers,
    unbind_context,
)


@pytest.fixture(scope="module")
def setup_logging():
    """Configure logging for all tests in this module."""
    log_format = os.getenv("LOG_FORMAT", "console")
    configure_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), json_format=log_format.lower() == "json")
    yield


@pytest.fixture(autouse=True)
def cleanup_context():
    """Ensure context is cleared before and after each test."""
    clear_context()
    yield
    clear_context()


class TestProcessors:
    def test_app_name_added(self):
        assert add_app_context(None, "info", {"event": "x"})["app"] == APP_NAME

    def test_debug_dropped_outside_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "INFO")

        with pytest.raises(structlog.DropEvent):
            drop_debug_in_production(None, "debug", {"event": "x"})

    def test_debug_kept_in_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        assert drop_debug_in_production(None, "debug", {"event": "x"}) == {"event": "x"}

    def test_other_levels_kept(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "INFO")

        assert drop_debug_in_production(None, "info", {"event": "x"}) == {"event": "x"}

    def test_payroll_number_masked(self):
        event = mask_payroll_numbers(None, "info", {"event": "x", "payroll_no": "PAY-12345"})

        assert event["payroll_no"] == "*******45"

    def test_payroll_change_masked_on_both_sides(self):
        changes = {"payroll_no": {"old": None, "new": "P-981"}, "payment_type": {"old": None, "new": "Card Payment"}}

        event = mask_payroll_numbers(None, "info", {"event": "x", "changes": changes})

        assert event["changes"]["payroll_no"] == {"old": None, "new": "***81"}
        assert event["changes"]["payment_type"] == {"old": None, "new": "Card Payment"}

    def test_events_without_payroll_untouched(self):
        assert mask_payroll_numbers(None, "info", {"event": "x", "changes": "n/a"}) == {"event": "x", "changes": "n/a"}

class TestContextBinding:
    def test_bind_and_unbind(self):
        bind_context(event_id="evt-1", tenant_id="tenant-1")
        assert structlog.contextvars.get_contextvars() == {"event_id": "evt-1", "tenant_id": "tenant-1"}

        unbind_context("event_id")
        assert structlog.contextvars.get_contextvars() == {"tenant_id": "tenant-1"}

    def test_clear(self):
        bind_context(request_id="r-1")
        clear_context()

        assert structlog.contextvars.get_contextvars() == {}


class TestLoggingCalls:
    """Logging at every level with bound context must not raise."""

    def test_all_levels(self, setup_logging):
        logger = get_logger("test.levels")
        bind_context(correlation_id="corr-1", profile_id="665f1c2e9b1e8a3d4c5b6a70")

        logger.debug("subscription_lookup", subscription_year=2024)
        logger.info("subscription_created", membership_movement="NewJoin")
        logger.warning("subscription_field_dropped", field="paymentType", value="Cheque")
        logger.error("event_publish_failed", topic="members.subscription.current.updated.v1")

    def test_exception_logging(self, setup_logging):
        logger = get_logger("test.errors")
        try:
            raise ValueError("Invalid dateJoined format")
        except ValueError:
            logger.error("subscription_upsert_failed", exc_info=True)

    def test_json_format(self):
        configure_logging(log_level="INFO", json_format=True)
        get_logger("test.json").info("service_started", status="ready")
