"""
Proration for mid-cycle plan changes

Amounts are compared per month so that plans on different intervals can be
weighed against each other. Only upgrades are prorated:

    prorated = new_monthly * r - old_monthly * r

where r is the unused share of the current period, clamped to [0, 1].
Downgrades and lateral changes take effect without a charge.
"""
from typing import Dict, Any, Optional
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

MONTHS_PER_INTERVAL = {
    "monthly": Decimal(1),
    "quarterly": Decimal(3),
    "yearly": Decimal(12),
    "one-time": Decimal(1),
}


def monthly_amount(snapshot: Dict[str, Any]) -> Decimal:
    """Base amount of a plan snapshot normalized to one month"""
    base = Decimal(snapshot.get("base_amount") or 0)
    months = MONTHS_PER_INTERVAL.get(snapshot.get("interval"), Decimal(1))
    return base / months


class ProrationService:
    """Calculate the charge owed when a subscription changes plan mid-period"""

    def _get_change_type(self, old_monthly: Decimal, new_monthly: Decimal) -> str:
        if new_monthly > old_monthly:
            return "upgrade"
        elif new_monthly < old_monthly:
            return "downgrade"
        return "same"

    def _time_remaining_ratio(
        self,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        at: datetime
    ) -> Decimal:
        if period_start is None or period_end is None:
            return Decimal(0)

        total = (period_end - period_start).total_seconds()
        if total <= 0:
            return Decimal(0)

        remaining = (period_end - at).total_seconds()
        ratio = Decimal(str(remaining)) / Decimal(str(total))
        return max(Decimal(0), min(Decimal(1), ratio))

    def calculate_proration(
        self,
        old_snapshot: Dict[str, Any],
        new_snapshot: Dict[str, Any],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Calculate proration for a plan change

        Args:
            old_snapshot: Plan snapshot the subscription is leaving
            new_snapshot: Plan snapshot it moves to
            period_start: Start of the current billing period
            period_end: End of the current billing period
            at: When the change takes effect (defaults to now)

        Returns:
            Dictionary with the change type, the remaining-time ratio and the
            credit/charge breakdown; prorated_amount is an integer in minor units
        """
        at = at or datetime.utcnow()

        old_monthly = monthly_amount(old_snapshot)
        new_monthly = monthly_amount(new_snapshot)
        change_type = self._get_change_type(old_monthly, new_monthly)
        ratio = self._time_remaining_ratio(period_start, period_end, at)

        credit = old_monthly * ratio
        charge = new_monthly * ratio

        if change_type == "upgrade":
            prorated = (charge - credit).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        else:
            prorated = Decimal(0)

        logger.debug(
            f"Proration {change_type}: ratio={ratio:.4f} old={old_monthly} new={new_monthly} prorated={prorated}"
        )

        return {
            "change_type": change_type,
            "time_remaining_ratio": float(ratio),
            "old_monthly": float(old_monthly),
            "new_monthly": float(new_monthly),
            "credit": float(credit),
            "charge": float(charge),
            "prorated_amount": int(prorated),
        }


def get_proration_service() -> ProrationService:
    return ProrationService()
