"""
Position sizing for auto-sized orders.

Paper variant: enter a margin figure, the terminal derives the quantity.
Live variant: compute a whole number of contracts from price, contract
size and leverage.
"""

import math
from dataclasses import dataclass
from typing import Optional

from tv_executor.config import (
    AUTO_SIZE_FRACTION, SIZING_CONTRACTS, SIZING_MARGIN, BrokerProfile
)

SIZING_MANUAL = "manual"


@dataclass(frozen=True)
class SizingPlan:
    """What the order form should be given, and the pre-fill estimates"""
    mode: str
    quantity: float = 0.0       # Contracts to type (manual / contracts modes)
    margin: float = 0.0         # Margin to type (margin mode) or the estimated margin
    balance: Optional[float] = None
    price: Optional[float] = None
    capped: bool = False


def usable_margin(balance: float, fraction: float = AUTO_SIZE_FRACTION,
                  cap: Optional[float] = None) -> float:
    """
    floor(balance * fraction * 100) / 100, limited to cap, never negative.

    Examples:
        usable_margin(10000, 0.9, 1000) -> 1000.0
        usable_margin(500, 0.9, 1000) -> 450.0
    """
    if balance is None or balance <= 0:
        return 0.0
    amount = math.floor(balance * fraction * 100) / 100
    if cap is not None and amount > cap:
        amount = cap
    return max(amount, 0.0)


def margin_per_contract(price: float, contract_size: float, leverage: float) -> float:
    return price * contract_size / leverage


def whole_contracts(balance: float, price: float, contract_size: float, leverage: float,
                    fraction: float = AUTO_SIZE_FRACTION):
    """
    Largest whole contract count whose margin fits in balance * fraction.

    Returns:
        (contracts, margin) - (1, 0.0) when the price is unknown
    """
    if not price or price <= 0:
        return 1, 0.0
    per_contract = margin_per_contract(price, contract_size, leverage)
    available = max(balance or 0.0, 0.0) * fraction
    contracts = int(math.floor(available / per_contract))
    return contracts, contracts * per_contract


def plan_manual(quantity: float) -> SizingPlan:
    return SizingPlan(mode=SIZING_MANUAL, quantity=quantity)


def plan_auto(profile: BrokerProfile, balance: Optional[float], price: Optional[float] = None,
              fraction: float = AUTO_SIZE_FRACTION) -> SizingPlan:
    """Auto-size plan for the profile's sizing mode."""
    balance = balance or 0.0
    if profile.sizing_mode == SIZING_CONTRACTS:
        contracts, margin = whole_contracts(balance, price, profile.contract_size,
                                            profile.leverage, fraction)
        return SizingPlan(mode=SIZING_CONTRACTS, quantity=contracts, margin=margin,
                          balance=balance, price=price)

    if profile.sizing_mode == SIZING_MARGIN:
        uncapped = usable_margin(balance, fraction)
        margin = usable_margin(balance, fraction, profile.max_margin)
        return SizingPlan(mode=SIZING_MARGIN, margin=margin, balance=balance,
                          capped=margin < uncapped)

    raise ValueError(f"Unknown sizing mode: {profile.sizing_mode}")
