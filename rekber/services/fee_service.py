"""Escrow fee arithmetic and tier classification.

Pure functions only: nothing here touches the store. Amounts are ``Decimal``
quantised to six places, matching the ``Numeric(18, 6)`` money columns.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from rekber.config import settings

_QUANT = Decimal("0.000001")

# Buyer tier discount on the subtotal. Unknown tiers get bronze's rate.
TIER_DISCOUNT_RATES: dict[str, Decimal] = {
    "bronze": Decimal("0"),
    "silver": Decimal("0.001"),  # 0.1%
    "gold": Decimal("0.002"),  # 0.2%
    "platinum": Decimal("0.003"),  # 0.3%
}

# Tier thresholds on cumulative successful transactions.
# Ordered descending so the first match wins.
_TIER_THRESHOLDS: list[tuple[str, int]] = [
    ("platinum", 100),
    ("gold", 50),
    ("silver", 10),
    # anything below silver is bronze
]


def format_money(amount: Decimal | int | str) -> str:
    """Exact plain-decimal text without trailing zeros or exponent ("206800", "1500.5")."""
    d = Decimal(str(amount))
    if d == d.to_integral_value():
        return str(d.quantize(Decimal(1)))
    return format(d.normalize(), "f")


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    """Coerce a value to Decimal with 6 decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_QUANT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    platform_fee: Decimal
    tier_discount: Decimal
    gateway_fee: Decimal
    total: Decimal
    net_to_merchant: Decimal

    def as_dict(self) -> dict:
        return asdict(self)


def discount_rate(buyer_tier: str | None) -> Decimal:
    return TIER_DISCOUNT_RATES.get(buyer_tier or "bronze", TIER_DISCOUNT_RATES["bronze"])


def compute_fees(unit_price: Decimal | int | str, quantity: int, buyer_tier: str | None) -> FeeBreakdown:
    """Map (unit price, quantity, buyer tier) to the transaction's money fields.

    Callers must reject non-positive prices and quantities beforehand.

    ``net_to_merchant`` is derived as ``total - (fees - discount)``, which is
    algebraically the subtotal; it is kept in this form so a future fee model
    that rounds fees differently changes it in one place.
    """
    price = to_decimal(unit_price)
    subtotal = to_decimal(price * quantity)
    platform_fee = to_decimal(subtotal * to_decimal(settings.platform_fee_pct))
    tier_discount = to_decimal(subtotal * discount_rate(buyer_tier))
    gateway_fee = to_decimal(subtotal * to_decimal(settings.gateway_fee_pct))
    total = subtotal + platform_fee - tier_discount + gateway_fee
    net_to_merchant = total - (platform_fee + gateway_fee - tier_discount)
    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=platform_fee,
        tier_discount=tier_discount,
        gateway_fee=gateway_fee,
        total=total,
        net_to_merchant=net_to_merchant,
    )


def tier_for_success_count(total_success_trx: int) -> str:
    """Classify a buyer or merchant by cumulative successful transactions.

    - platinum: >= 100
    - gold:     >= 50
    - silver:   >= 10
    - bronze:   < 10
    """
    for tier_name, threshold in _TIER_THRESHOLDS:
        if total_success_trx >= threshold:
            return tier_name
    return "bronze"
