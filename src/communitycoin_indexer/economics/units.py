"""Fixed-point conversions between on-chain wei integers and Decimal amounts."""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Context, Decimal

WEI_DECIMALS = 18
WEI_SCALE = 10**WEI_DECIMALS

# 78 significant digits covers the full uint256 range.
AMOUNT_CONTEXT = Context(prec=78, rounding=ROUND_HALF_EVEN)
AMOUNT_QUANTUM = Decimal(1).scaleb(-WEI_DECIMALS)

DEFAULT_INITIAL_PRICE = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    """Round an amount to 18 decimal places (half-even)."""
    return value.quantize(AMOUNT_QUANTUM, context=AMOUNT_CONTEXT)


def from_wei(value: int) -> Decimal:
    """Convert a raw uint256 amount into a Decimal with 18 fractional digits."""
    if value < 0:
        raise ValueError("wei amounts are unsigned")
    return quantize(Decimal(value).scaleb(-WEI_DECIMALS, context=AMOUNT_CONTEXT))


def to_wei(value: Decimal) -> int:
    """Convert a Decimal amount back to its raw uint256 representation."""
    if value < 0:
        raise ValueError("wei amounts are unsigned")
    return int(quantize(value).scaleb(WEI_DECIMALS, context=AMOUNT_CONTEXT))


def price_from_reserve(
    reserve_wei: int,
    supply_wei: int,
    *,
    initial_price: Decimal = DEFAULT_INITIAL_PRICE,
) -> Decimal:
    """Spot price implied by the contract's reserve and supply.

    Mirrors the contract's integer math: `reserve * 1e18 // supply`, then
    scaled back to a decimal amount. A group with no supply trades at
    `initial_price`.
    """
    if supply_wei == 0:
        return quantize(initial_price)
    return from_wei(reserve_wei * WEI_SCALE // supply_wei)


def multiply(a: Decimal, b: Decimal) -> Decimal:
    """Exact product of two amounts, rounded to 18 decimal places."""
    return quantize(AMOUNT_CONTEXT.multiply(a, b))
