"""Utility functions and helpers for the subscription service."""

from membership_subscriptions.utils.membership_year import (
    end_of_year,
    ensure_utc,
    parse_date,
    start_of_next_year,
    subscription_year_for,
    to_iso_millis,
    utc_now,
)
from membership_subscriptions.utils.object_id import (
    is_valid_object_id,
    new_object_id,
    parse_object_id,
)

__all__ = [
    # Entity references
    "new_object_id",
    "is_valid_object_id",
    "parse_object_id",
    # Membership year arithmetic
    "parse_date",
    "ensure_utc",
    "utc_now",
    "subscription_year_for",
    "end_of_year",
    "start_of_next_year",
    "to_iso_millis",
]
