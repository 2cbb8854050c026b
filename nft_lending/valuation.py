"""Advance and repayment amounts for a piece of collateral."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Context, Decimal, localcontext
from typing import Any, Dict

from .registry import CollateralTerms

WEI = Decimal("0.000000000000000001")

# Wide enough that wei-exact ether amounts never round mid-calculation.
AMOUNTS = Context(prec=100)


def floor_to_unit(amount: Decimal, unit: Decimal = WEI) -> Decimal:
    """Round down to a whole number of ``unit``; never rounds up."""
    with localcontext(AMOUNTS):
        units = (Decimal(amount) / unit).to_integral_value(rounding=ROUND_DOWN)
        return units * unit


def compute_advance(declared_value: Decimal, terms: CollateralTerms, unit: Decimal = WEI) -> Decimal:
    if declared_value < 0:
        raise ValueError("declared value must not be negative")
    with localcontext(AMOUNTS):
        return floor_to_unit(Decimal(declared_value) * terms.advance_fraction, unit)


def compute_repayment(advance_amount: Decimal, terms: CollateralTerms, unit: Decimal = WEI) -> Decimal:
    if advance_amount < 0:
        raise ValueError("advance amount must not be negative")
    with localcontext(AMOUNTS):
        return floor_to_unit(Decimal(advance_amount) * terms.repayment_multiplier, unit)


@dataclass(frozen=True)
class Quote:
    declared_value: Decimal
    advance_amount: Decimal
    repayment_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "declaredValue": self.declared_value,
            "advanceAmount": self.advance_amount,
            "repaymentAmount": self.repayment_amount,
        }


def quote(declared_value: Decimal, terms: CollateralTerms, unit: Decimal = WEI) -> Quote:
    advance = compute_advance(declared_value, terms, unit)
    return Quote(
        declared_value=Decimal(declared_value),
        advance_amount=advance,
        repayment_amount=compute_repayment(advance, terms, unit),
    )


__all__ = ["AMOUNTS", "Quote", "WEI", "compute_advance", "compute_repayment", "floor_to_unit", "quote"]
