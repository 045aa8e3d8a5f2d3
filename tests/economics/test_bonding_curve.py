"""Tests for the bonding curve engine."""

from decimal import Decimal

import pytest

from communitycoin_indexer.config import CurveSettings
from communitycoin_indexer.economics.bonding_curve import CurveParams, CurveState, apply_purchase, apply_sale


@pytest.fixture
def params() -> CurveParams:
    return CurveParams()


@pytest.fixture
def state() -> CurveState:
    return CurveState(
        price=Decimal("0.01"),
        supply=Decimal("1000"),
        reserve=Decimal("10"),
        treasury=Decimal("10"),
    )


class TestApplyPurchase:
    def test_fee_is_two_percent_to_treasury(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("1"), params)

        assert quote.fee == Decimal("0.02")
        assert quote.state.treasury == Decimal("10.02")
        assert quote.state.reserve == Decimal("10.98")

    def test_average_price_follows_linear_model(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("1"), params)

        expected = state.price * (1 + quote.tokens_out / state.supply * params.sensitivity)
        assert abs(quote.average_price - expected) < Decimal("1e-15")
        # Net ETH buys the minted tokens at the average price.
        assert abs(quote.tokens_out * quote.average_price - Decimal("0.98")) < Decimal("1e-15")

    def test_supply_grows_by_tokens_out(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("2.5"), params)

        assert quote.state.supply == state.supply + quote.tokens_out
        assert quote.tokens_out > 0

    def test_price_rises_after_buy(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("1"), params)

        assert quote.new_price > state.price
        assert quote.state.price == quote.new_price

    def test_zero_supply_mints_at_spot_price(self, params: CurveParams) -> None:
        empty = CurveState(price=Decimal("0.01"), supply=Decimal("0"))

        quote = apply_purchase(empty, Decimal("1"), params)

        assert quote.tokens_out == Decimal("98")
        assert quote.average_price == Decimal("0.01")
        assert quote.new_price == Decimal("0.0105")

    def test_zero_eth_is_a_no_op(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("0"), params)

        assert quote.tokens_out == 0
        assert quote.fee == 0
        assert quote.state.supply == state.supply

    def test_deterministic(self, state: CurveState, params: CurveParams) -> None:
        first = apply_purchase(state, Decimal("0.123456789"), params)
        second = apply_purchase(state, Decimal("0.123456789"), params)

        assert first == second
        assert str(first.tokens_out) == str(second.tokens_out)

    def test_amounts_quantized_to_eighteen_places(self, state: CurveState, params: CurveParams) -> None:
        quote = apply_purchase(state, Decimal("0.3"), params)

        assert quote.tokens_out.as_tuple().exponent == -18
        assert quote.new_price.as_tuple().exponent == -18

    def test_negative_eth_rejected(self, state: CurveState, params: CurveParams) -> None:
        with pytest.raises(ValueError):
            apply_purchase(state, Decimal("-1"), params)


class TestApplySale:
    def test_oversell_is_clipped_to_supply(self, params: CurveParams) -> None:
        small = CurveState(price=Decimal("0.01"), supply=Decimal("50"), reserve=Decimal("10"))

        quote = apply_sale(small, Decimal("80"), params)

        assert quote.clipped is True
        assert quote.tokens_in == Decimal("50")
        assert quote.state.supply == Decimal("0")
        assert quote.eth_out == Decimal("0.45")
        assert quote.new_price == Decimal("0.0095")
        assert quote.state.reserve == Decimal("9.55")

    def test_price_never_below_floor(self, params: CurveParams) -> None:
        cheap = CurveState(price=Decimal("0.001"), supply=Decimal("100"), reserve=Decimal("1"))

        quote = apply_sale(cheap, Decimal("100"), params)

        assert quote.new_price == params.min_price

    def test_repeated_sales_stay_positive(self, state: CurveState, params: CurveParams) -> None:
        current = state
        for _ in range(50):
            quote = apply_sale(current, current.supply / 2, params)
            assert quote.new_price >= params.min_price
            assert quote.eth_out >= 0
            current = quote.state
        assert current.reserve >= 0

    def test_proceeds_capped_by_reserve(self, params: CurveParams) -> None:
        thin = CurveState(price=Decimal("1"), supply=Decimal("100"), reserve=Decimal("0.5"))

        quote = apply_sale(thin, Decimal("10"), params)

        assert quote.eth_out == Decimal("0.5")
        assert quote.state.reserve == Decimal("0")

    def test_sale_from_empty_supply(self, params: CurveParams) -> None:
        empty = CurveState(price=Decimal("0.01"), supply=Decimal("0"))

        quote = apply_sale(empty, Decimal("5"), params)

        assert quote.eth_out == 0
        assert quote.tokens_in == 0
        assert quote.clipped is True

    def test_negative_tokens_rejected(self, state: CurveState, params: CurveParams) -> None:
        with pytest.raises(ValueError):
            apply_sale(state, Decimal("-1"), params)


def test_params_from_settings_defaults() -> None:
    assert CurveParams.from_settings(CurveSettings()) == CurveParams()


def test_negative_state_rejected() -> None:
    with pytest.raises(ValueError):
        CurveState(price=Decimal("0.01"), supply=Decimal("-1"))
