"""Tests for state change logging on subscription records."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from membership_subscriptions.models.subscription import SubscriptionRecord, SubscriptionStatus
from membership_subscriptions.state_logger import log_payment_details_change
from membership_subscriptions.utils.membership_year import end_of_year


@pytest.fixture
def subscription():
    start = datetime(2024, 3, 10, tzinfo=timezone.utc)
    return SubscriptionRecord(
        id="665f1c2e9b1e8a3d4c5b6a79",
        tenant_id="tenant-1",
        profile_id="665f1c2e9b1e8a3d4c5b6a70",
        subscription_year=2024,
        start_date=start,
        end_date=end_of_year(start),
    )


@patch("membership_subscriptions.state_logger.logger")
def test_status_change_is_logged(mock_logger, subscription):
    subscription.set_status(SubscriptionStatus.RESIGNED, reason="Left employment")

    assert subscription.subscription_status == SubscriptionStatus.RESIGNED
    event, = mock_logger.info.call_args.args
    kwargs = mock_logger.info.call_args.kwargs
    assert event == "subscription_status_changed"
    assert kwargs["old_status"] == "Active"
    assert kwargs["new_status"] == "Resigned"
    assert kwargs["reason"] == "Left employment"


@patch("membership_subscriptions.state_logger.logger")
def test_same_status_is_not_logged(mock_logger, subscription):
    subscription.set_status(SubscriptionStatus.ACTIVE)

    mock_logger.info.assert_not_called()


@patch("membership_subscriptions.state_logger.logger")
def test_current_flag_change_is_logged(mock_logger, subscription):
    subscription.set_current(False, reason="superseded by 2025")

    assert subscription.is_current is False
    assert mock_logger.info.call_args.args == ("subscription_current_flag_changed",)
    assert mock_logger.info.call_args.kwargs["subscription_year"] == 2024


@patch("membership_subscriptions.state_logger.logger")
def test_payment_change_renders_before_after(mock_logger):
    log_payment_details_change(
        subscription_id="s-1",
        profile_id="p-1",
        changes={"payroll_no": (None, "P-1")},
    )

    kwargs = mock_logger.info.call_args.kwargs
    assert kwargs["changes"]["payroll_no"] == {"old": None, "new": "P-1"}
