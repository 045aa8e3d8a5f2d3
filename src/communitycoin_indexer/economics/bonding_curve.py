"""Bonding-curve state transitions for buys and sells.

The engine is a pure function of its inputs: every computation runs in the
same fixed decimal context and every amount is quantized to 18 decimal places,
so identical inputs always produce bit-identical outputs.

It prices trades with the linear approximation used by the trading UI:

    average execution price = price * (1 + tokens / supply * sensitivity)
    spot price after a buy  = price * (1 + tokens / (supply + tokens) * impact)
    spot price after a sell = max(min_price, price * (1 - tokens / supply * impact))

These figures are estimates for display. Indexed group state always comes
from the values emitted by the contract.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING

from communitycoin_indexer.economics.units import AMOUNT_CONTEXT, DEFAULT_INITIAL_PRICE, multiply, quantize

if TYPE_CHECKING:
    from communitycoin_indexer.config import CurveSettings

_ZERO = Decimal(0)
_ONE = Decimal(1)
_TWO = Decimal(2)
_FOUR = Decimal(4)


@dataclass(frozen=True)
class CurveParams:
    """Tunable curve constants."""

    sensitivity: Decimal = Decimal("0.1")
    price_impact: Decimal = Decimal("0.05")
    fee_rate: Decimal = Decimal("0.02")
    min_price: Decimal = Decimal("0.001")
    initial_price: Decimal = DEFAULT_INITIAL_PRICE

    @classmethod
    def from_settings(cls, settings: CurveSettings) -> CurveParams:
        return cls(
            sensitivity=settings.sensitivity,
            price_impact=settings.price_impact,
            fee_rate=settings.fee_rate,
            min_price=settings.min_price,
            initial_price=settings.initial_price,
        )

    def floor_price(self, price: Decimal) -> Decimal:
        """Clamp a price to the configured minimum."""
        return quantize(max(price, self.min_price))


@dataclass(frozen=True)
class CurveState:
    """Economic state of one group's token."""

    price: Decimal
    supply: Decimal
    reserve: Decimal = _ZERO
    treasury: Decimal = _ZERO

    def __post_init__(self) -> None:
        for name in ("price", "supply", "reserve", "treasury"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def market_cap(self) -> Decimal:
        return multiply(self.price, self.supply)


@dataclass(frozen=True)
class PurchaseQuote:
    tokens_out: Decimal
    fee: Decimal
    new_price: Decimal
    average_price: Decimal
    state: CurveState


@dataclass(frozen=True)
class SaleQuote:
    """Result of a sale. `tokens_in` is the amount actually sold after clipping."""

    eth_out: Decimal
    new_price: Decimal
    tokens_in: Decimal
    clipped: bool
    state: CurveState


def apply_purchase(state: CurveState, eth_in: Decimal, params: CurveParams | None = None) -> PurchaseQuote:
    """Spend `eth_in` on the curve.

    The fee goes to the treasury; the remaining ETH enters the reserve and
    mints tokens at the average execution price. Because the average price
    depends on the amount minted, `tokens_out` is the positive root of

        (price * sensitivity / supply) * t**2 + price * t - net_eth = 0

    With zero supply (or a flat curve) tokens are minted at the spot price.

    Raises:
        ValueError: If `eth_in` is negative.
    """
    params = params or CurveParams()
    if eth_in < 0:
        raise ValueError("eth_in must be >= 0")

    with localcontext(AMOUNT_CONTEXT):
        price = params.floor_price(state.price)
        supply = state.supply
        fee = quantize(eth_in * params.fee_rate)
        net = eth_in - fee

        if net == 0:
            tokens_out = _ZERO
        elif supply == 0 or params.sensitivity == 0:
            tokens_out = net / price
        else:
            a = price * params.sensitivity / supply
            discriminant = price * price + _FOUR * a * net
            tokens_out = (discriminant.sqrt() - price) / (_TWO * a)
        tokens_out = quantize(tokens_out)

        average_price = quantize(net / tokens_out) if tokens_out > 0 else price

        new_supply = supply + tokens_out
        if new_supply > 0:
            new_price = price * (_ONE + tokens_out / new_supply * params.price_impact)
        else:
            new_price = price
        new_price = params.floor_price(new_price)

        new_state = CurveState(
            price=new_price,
            supply=quantize(new_supply),
            reserve=quantize(state.reserve + net),
            treasury=quantize(state.treasury + fee),
        )

    return PurchaseQuote(
        tokens_out=tokens_out,
        fee=fee,
        new_price=new_price,
        average_price=average_price,
        state=new_state,
    )


def apply_sale(state: CurveState, tokens_in: Decimal, params: CurveParams | None = None) -> SaleQuote:
    """Sell `tokens_in` back to the curve.

    Tokens beyond the current supply are clipped. Proceeds are never negative
    and never exceed the reserve; the resulting price never drops below
    `min_price`.

    Raises:
        ValueError: If `tokens_in` is negative.
    """
    params = params or CurveParams()
    if tokens_in < 0:
        raise ValueError("tokens_in must be >= 0")

    with localcontext(AMOUNT_CONTEXT):
        price = params.floor_price(state.price)
        supply = state.supply
        sold = min(tokens_in, supply)
        clipped = sold != tokens_in

        if supply == 0 or sold == 0:
            return SaleQuote(
                eth_out=_ZERO,
                new_price=price,
                tokens_in=quantize(sold),
                clipped=clipped,
                state=replace(state, price=price),
            )

        share = sold / supply
        eth_out = sold * price * (_ONE - share * params.sensitivity)
        eth_out = quantize(min(max(eth_out, _ZERO), state.reserve))
        new_price = params.floor_price(price * (_ONE - share * params.price_impact))

        new_state = CurveState(
            price=new_price,
            supply=quantize(supply - sold),
            reserve=quantize(state.reserve - eth_out),
            treasury=state.treasury,
        )

    return SaleQuote(
        eth_out=eth_out,
        new_price=new_price,
        tokens_in=quantize(sold),
        clipped=clipped,
        state=new_state,
    )
