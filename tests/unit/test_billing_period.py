"""Tests for billing period parsing utilities."""

from datetime import timedelta

import pytest

from storefront_billing.utils.billing_period import (
    DAYS_PER_UNIT,
    billing_period_to_timedelta,
    parse_billing_period,
    validate_billing_period,
)


class TestParseBillingPeriod:
    """Test parse_billing_period function."""

    def test_parse_daily_period(self):
        """Test parsing daily periods."""
        assert parse_billing_period("P1D") == 1
        assert parse_billing_period("P7D") == 7
        assert parse_billing_period("P30D") == 30

    def test_parse_weekly_period(self):
        assert parse_billing_period("P1W") == 7
        assert parse_billing_period("P2W") == 14

    def test_parse_monthly_period(self):
        """Months count as 30 days."""
        assert parse_billing_period("P1M") == DAYS_PER_UNIT["M"]
        assert parse_billing_period("P3M") == 90

    def test_parse_yearly_period(self):
        assert parse_billing_period("P1Y") == 365

    def test_parse_case_insensitive(self):
        """Test that parsing is case insensitive."""
        assert parse_billing_period("p7d") == 7
        assert parse_billing_period(" P3D ") == 3

    def test_number_defaults_to_one(self):
        assert parse_billing_period("PD") == 1

    @pytest.mark.parametrize("period", ["", "7D", "P1H", "P1DT2H", "P-1D", "month"])
    def test_invalid_formats(self, period):
        with pytest.raises(ValueError):
            parse_billing_period(period)

    def test_zero_is_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            parse_billing_period("P0D")

    def test_non_string_is_rejected(self):
        with pytest.raises(ValueError):
            parse_billing_period(None)


class TestConversions:
    """Test timedelta conversion and validation."""

    def test_to_timedelta(self):
        assert billing_period_to_timedelta("P7D") == timedelta(days=7)
        assert billing_period_to_timedelta("P1W") == timedelta(days=7)

    def test_validate(self):
        assert validate_billing_period("P3D")
        assert not validate_billing_period("three days")
        assert not validate_billing_period(None)
