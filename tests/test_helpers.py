"""
Test helper utilities
Provides deal builders, a simulated clock and an in-memory Bitrix24 deal source
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple

from opsportal.bitrix.transform import (
    UF_ADDRESS,
    UF_AMOUNT_CURRENCY,
    UF_CUSTOMER_NAME,
    UF_MOBILE,
    UF_ORDER_NUMBER,
    UF_PACKAGE_PARTNER,
)


# ============================================================================
# Deal Builders
# ============================================================================

def make_deal(deal_id: int, order_number: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
    """Build a crm.deal.list record the way Bitrix24 returns it"""
    order_number = order_number if order_number is not None else f"Nus{80000 + deal_id}"
    day = 1 + deal_id % 28
    deal = {
        "ID": str(deal_id),
        "TITLE": (
            f"Mode : Cod,Package :AC Service (1 AC) By : OM Cooling Centre,"
            f"Order : {order_number},Mb : 9876543210"
        ),
        "OPPORTUNITY": "510.00",
        "CURRENCY_ID": "INR",
        "STAGE_ID": "C2:EXECUTING",
        "STAGE_SEMANTIC_ID": "P",
        "CONTACT_ID": "77",
        "ASSIGNED_BY_ID": "1",
        "CATEGORY_ID": "2",
        "DATE_CREATE": f"2024-05-{day:02d}T10:00:00+03:00",
        "DATE_MODIFY": f"2024-05-{day:02d}T12:30:00+03:00",
        "CLOSED": "N",
        "IS_NEW": "N",
        UF_ADDRESS: "Plot no :192,Dibbapalem, Srinagar, Visakhapatnam , 530026, ",
        UF_CUSTOMER_NAME: "Ravi Kumar",
        UF_MOBILE: "9876543210",
        UF_ORDER_NUMBER: order_number,
        UF_AMOUNT_CURRENCY: "510|INR",
        UF_PACKAGE_PARTNER: "AC Service (1 AC) By : OM Cooling Centre",
    }
    deal.update(overrides)
    return deal


def make_deals(count: int, start_id: int = 1) -> List[Dict[str, Any]]:
    return [make_deal(deal_id) for deal_id in range(start_id, start_id + count)]


# ============================================================================
# Simulated Time
# ============================================================================

class FakeClock:
    """Monotonic clock that only moves when told to, or when slept on"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================================
# Deal Source
# ============================================================================

class FakeDealSource:
    """In-memory stand-in for BitrixClient.fetch_deals"""

    def __init__(
        self,
        deals: Optional[List[Dict[str, Any]]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        configured: bool = True
    ):
        self.deals = list(deals or [])
        self.error = error
        self.delay = delay
        self.configured = configured
        self.calls: List[Tuple[int, int]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def fetch_deals(self, start: int = 0, limit: int = 10) -> Dict[str, Any]:
        self.calls.append((start, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"result": self.deals[start:start + limit], "total": len(self.deals)}
