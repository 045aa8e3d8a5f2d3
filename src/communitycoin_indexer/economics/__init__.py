"""Bonding-curve token economics."""

from communitycoin_indexer.economics.bonding_curve import (
    CurveParams,
    CurveState,
    PurchaseQuote,
    SaleQuote,
    apply_purchase,
    apply_sale,
)
from communitycoin_indexer.economics.units import WEI_SCALE, from_wei, price_from_reserve, to_wei

__all__ = [
    "CurveParams",
    "CurveState",
    "PurchaseQuote",
    "SaleQuote",
    "WEI_SCALE",
    "apply_purchase",
    "apply_sale",
    "from_wei",
    "price_from_reserve",
    "to_wei",
]
