"""
Tests for mid-cycle plan change proration
"""
from datetime import datetime, timedelta

from credibill.services.proration_service import ProrationService, monthly_amount


PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = PERIOD_START + timedelta(days=30)
MIDPOINT = PERIOD_START + timedelta(days=15)


def snapshot(base_amount, interval="monthly"):
    return {"base_amount": base_amount, "interval": interval, "currency": "UGX"}


class TestMonthlyAmount:

    def test_intervals_normalize_to_one_month(self):
        assert monthly_amount(snapshot(30000)) == 30000
        assert monthly_amount(snapshot(90000, "quarterly")) == 30000
        assert monthly_amount(snapshot(120000, "yearly")) == 10000

    def test_missing_base_amount(self):
        assert monthly_amount({"interval": "monthly"}) == 0


class TestCalculateProration:

    def setup_method(self):
        self.service = ProrationService()

    def test_upgrade_at_midpoint(self):
        result = self.service.calculate_proration(snapshot(30000), snapshot(60000), PERIOD_START, PERIOD_END, at=MIDPOINT)

        assert result["change_type"] == "upgrade"
        assert result["time_remaining_ratio"] == 0.5
        assert result["credit"] == 15000
        assert result["charge"] == 30000
        assert result["prorated_amount"] == 15000

    def test_downgrade_is_free(self):
        result = self.service.calculate_proration(snapshot(60000), snapshot(30000), PERIOD_START, PERIOD_END, at=MIDPOINT)

        assert result["change_type"] == "downgrade"
        assert result["prorated_amount"] == 0

    def test_lateral_change(self):
        result = self.service.calculate_proration(
            snapshot(30000), snapshot(90000, "quarterly"), PERIOD_START, PERIOD_END, at=MIDPOINT
        )

        assert result["change_type"] == "same"
        assert result["prorated_amount"] == 0

    def test_yearly_upgrade_compared_per_month(self):
        result = self.service.calculate_proration(
            snapshot(10000), snapshot(240000, "yearly"), PERIOD_START, PERIOD_END, at=MIDPOINT
        )

        assert result["new_monthly"] == 20000
        assert result["prorated_amount"] == 5000

    def test_after_period_end_ratio_is_zero(self):
        result = self.service.calculate_proration(
            snapshot(30000), snapshot(60000), PERIOD_START, PERIOD_END, at=PERIOD_END + timedelta(days=3)
        )

        assert result["time_remaining_ratio"] == 0
        assert result["prorated_amount"] == 0

    def test_before_period_start_ratio_is_clamped(self):
        result = self.service.calculate_proration(
            snapshot(30000), snapshot(60000), PERIOD_START, PERIOD_END, at=PERIOD_START - timedelta(days=3)
        )

        assert result["time_remaining_ratio"] == 1
        assert result["prorated_amount"] == 30000

    def test_no_current_period(self):
        result = self.service.calculate_proration(snapshot(30000), snapshot(60000), None, None, at=MIDPOINT)

        assert result["time_remaining_ratio"] == 0
        assert result["prorated_amount"] == 0

    def test_rounds_to_whole_minor_units(self):
        at = PERIOD_START + timedelta(days=20)

        result = self.service.calculate_proration(snapshot(1000), snapshot(2001), PERIOD_START, PERIOD_END, at=at)

        assert isinstance(result["prorated_amount"], int)
        assert result["prorated_amount"] == 334
