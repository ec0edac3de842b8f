"""Tests for fee and payout arithmetic."""

from decimal import Decimal

import pytest

from app.exceptions import RequestValidationFailed, StateConflict
from app.services.payments import (
    calculate_order_amounts,
    calculate_payout,
    normalize_country,
    platform_fee_minor,
)


class TestCalculatePayout:
    def test_hundred_dollar_budget(self):
        breakdown = calculate_payout(Decimal("100.00"), 0)

        assert breakdown.platform_fee == Decimal("20.00")
        assert breakdown.payout_amount == Decimal("80.00")
        assert breakdown.fee_rate == Decimal("0.20")

    def test_fee_floors_in_cents(self):
        """5.003 → 500.3 cents → floor(100.06) = 100 cents."""
        breakdown = calculate_payout(5.003, 0)

        assert breakdown.platform_fee == Decimal("1.00")
        assert breakdown.payout_amount == Decimal("4.00")

    def test_processor_fee_deducted(self):
        breakdown = calculate_payout("10.00", "0.59")

        assert breakdown.platform_fee == Decimal("2.00")
        assert breakdown.payout_amount == Decimal("7.41")

    def test_payout_never_negative(self):
        breakdown = calculate_payout("10.00", "50.00")

        assert breakdown.payout_amount == Decimal("0.00")

    def test_negative_amount_rejected(self):
        with pytest.raises(RequestValidationFailed):
            calculate_payout("-1", 0)


class TestCalculateOrderAmounts:
    def test_domestic_order_has_no_surcharge(self):
        amounts = calculate_order_amounts(10000, 0, "JP", "JP")

        assert amounts.total_amount_minor == 10000
        assert amounts.platform_fee_minor == 2000
        assert amounts.intl_surcharge_minor == 0
        assert amounts.application_fee_minor == 2000
        assert amounts.is_international is False

    def test_international_order_adds_surcharge(self):
        amounts = calculate_order_amounts(10000, 0, "US", "JP")

        assert amounts.intl_surcharge_minor == 300
        assert amounts.application_fee_minor == 2300
        assert amounts.is_international is True

    def test_surcharge_minimum_applies(self):
        amounts = calculate_order_amounts(1000, 0, "US", "JP")

        assert amounts.intl_surcharge_minor == 100
        assert amounts.application_fee_minor == 300

    def test_fx_cost_included_in_total(self):
        amounts = calculate_order_amounts(999, 1, "JP", "JP")

        assert amounts.total_amount_minor == 1000
        assert amounts.platform_fee_minor == 200

    def test_fee_exceeding_total_rejected(self, monkeypatch):
        monkeypatch.setenv("INTL_SURCHARGE_MIN_MINOR", "500")

        with pytest.raises(StateConflict) as exc_info:
            calculate_order_amounts(100, 0, "US", "JP")

        assert exc_info.value.reason == "application_fee_exceeds_total"

    def test_negative_amount_rejected(self):
        with pytest.raises(RequestValidationFailed):
            calculate_order_amounts(-1, 0, "JP", "JP")


def test_platform_fee_floors():
    assert platform_fee_minor(999) == 199


@pytest.mark.parametrize(
    "value,expected",
    [("jp", "JP"), (" US ", "US"), ("FR", None), (None, None), (81, None)],
)
def test_normalize_country(value, expected):
    assert normalize_country(value) == expected
