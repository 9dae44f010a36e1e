from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from .model.orm import FeePlan


def compute_fees(total: int, fee_plan: Optional[FeePlan]) -> Tuple[int, int]:
    """Split an order total (minor units) into platform fee and organizer
    income using the organizer's percentage + fixed fee plan.
    """
    if fee_plan is None:
        return 0, total
    percent = Decimal(str(fee_plan.platform_fee_percent or 0))
    fixed = int(fee_plan.platform_fee_fixed or 0)
    variable = (Decimal(total) * percent / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    platform_fee = min(total, max(0, int(variable) + fixed))
    return platform_fee, total - platform_fee
