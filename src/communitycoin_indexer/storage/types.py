"""Exact decimal column type for token and ETH amounts.

PostgreSQL stores amounts as `NUMERIC(78, 18)`. SQLite has no exact decimal
storage (its NUMERIC affinity goes through float), so amounts are kept as
text there and converted back to `Decimal` on load.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy.types import Numeric, String, TypeDecorator


class DecimalAmount(TypeDecorator[Decimal]):
    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = 78, scale: int = 18) -> None:
        super().__init__()
        self._precision = precision
        self._scale = scale

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self._precision + 2))
        return dialect.type_descriptor(Numeric(self._precision, self._scale, asdecimal=True))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:  # noqa: ARG002
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))
