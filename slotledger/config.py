"""
config.py - Engine configuration.

A frozen dataclass of constants, validated on construction.
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import partial

from .amounts import Rounder, round_up_to_currency_unit
from .core import (
    DEFAULT_VAT_RATE, DEFAULT_CURRENCY_INCREMENT,
    UNIT_TYPE_CASH, UNIT_TYPE_FREE_CASH,
    Unit, currency,
)


@dataclass(frozen=True)
class EngineConfig:
    """
    Settings shared by every engine operation.

    Attributes:
        currency: Symbol of the paid balance bucket (escrow is always paid money)
        currency_name: Display name of the paid currency
        free_currency: Symbol of the free/bonus balance bucket
        decimal_places: Precision of both buckets
        vat_rate: Surcharge added to negotiated prices
        rounding_increment: Smallest currency unit that totals round up to
        auto_dispatch: Deliver outbox events right after each committed operation
    """
    currency: str = "KRW"
    currency_name: str = "Korean Won"
    free_currency: str = "KRW_FREE"
    decimal_places: int = 0
    vat_rate: Decimal = DEFAULT_VAT_RATE
    rounding_increment: Decimal = DEFAULT_CURRENCY_INCREMENT
    auto_dispatch: bool = True

    def __post_init__(self):
        if self.currency == self.free_currency:
            raise ValueError("paid and free currencies must differ")
        if self.vat_rate < 0:
            raise ValueError(f"vat_rate cannot be negative, got {self.vat_rate}")
        if self.rounding_increment <= 0:
            raise ValueError(f"rounding_increment must be positive, got {self.rounding_increment}")
        if self.decimal_places < 0:
            raise ValueError(f"decimal_places must be non-negative, got {self.decimal_places}")
        if self.paid_unit().round(self.rounding_increment) != self.rounding_increment:
            raise ValueError(
                f"rounding_increment {self.rounding_increment} is finer than {self.decimal_places} decimal places"
            )

    @property
    def rounder(self) -> Rounder:
        return partial(round_up_to_currency_unit, increment=self.rounding_increment)

    def paid_unit(self) -> Unit:
        return currency(self.currency, self.currency_name, self.decimal_places, UNIT_TYPE_CASH)

    def free_unit(self) -> Unit:
        return currency(
            self.free_currency, f"{self.currency_name} (free)", self.decimal_places, UNIT_TYPE_FREE_CASH,
        )
