"""Loan lifecycle: the projection type and its permitted transitions.

A loan is ``active`` from the moment its borrow operation finalizes and ends
in exactly one of the terminal states ``repaid`` or ``defaulted``. Transition
functions return a new :class:`Loan`; they never mutate their input.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InsufficientFunds, InvalidRequest, LoanClosed
from .ledger import LoanRecord
from .registry import CollateralTerms
from .valuation import AMOUNTS, WEI, quote


class LoanStatus(str, Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"

    @property
    def terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


@dataclass(frozen=True)
class Loan:
    loan_id: int
    collection_id: str
    token_id: int
    borrower_address: str
    advance_amount: Decimal
    repayment_amount: Decimal
    interest_accrued: Decimal
    start_time: int
    last_interest_paid_time: int
    missed_payment_count: int = 0
    status: LoanStatus = LoanStatus.ACTIVE

    @property
    def outstanding(self) -> Decimal:
        with localcontext(AMOUNTS):
            remaining = self.repayment_amount - self.interest_accrued
        return remaining if remaining > 0 else Decimal(0)

    def expires_at(self, duration: int) -> int:
        return self.start_time + duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loanId": self.loan_id,
            "collectionId": self.collection_id,
            "tokenId": self.token_id,
            "borrowerAddress": self.borrower_address,
            "advanceAmount": self.advance_amount,
            "repaymentAmount": self.repayment_amount,
            "interestAccrued": self.interest_accrued,
            "outstanding": self.outstanding,
            "startTime": self.start_time,
            "lastInterestPaidTime": self.last_interest_paid_time,
            "missedPaymentCount": self.missed_payment_count,
            "status": self.status.value,
        }


def ensure_open(loan: Loan) -> Loan:
    if loan.status.terminal:
        raise LoanClosed(
            f"loan {loan.loan_id} is {loan.status.value}",
            {"loanId": loan.loan_id, "status": loan.status.value},
        )
    return loan


def is_expired(loan: Loan, now: int, duration: int) -> bool:
    return now - loan.start_time > duration


def open_loan(
    loan_id: int,
    *,
    collection_id: str,
    token_id: int,
    borrower: str,
    declared_value: Decimal,
    terms: CollateralTerms,
    finalized_at: int,
    unit: Decimal = WEI,
) -> Loan:
    amounts = quote(declared_value, terms, unit)
    return Loan(
        loan_id=int(loan_id),
        collection_id=collection_id,
        token_id=int(token_id),
        borrower_address=borrower,
        advance_amount=amounts.advance_amount,
        repayment_amount=amounts.repayment_amount,
        interest_accrued=Decimal(0),
        start_time=int(finalized_at),
        last_interest_paid_time=int(finalized_at),
    )


def missed_periods(loan: Loan, now: int, period: int) -> int:
    """Whole interest periods elapsed since the last payment (or the start)."""
    elapsed = now - loan.last_interest_paid_time
    if elapsed <= period:
        return 0
    return int(elapsed // period)


def require_interest_payment(loan: Loan, supplied_value: Decimal) -> None:
    ensure_open(loan)
    if supplied_value <= 0:
        raise InvalidRequest("interest payment must be positive", {"suppliedValue": supplied_value})


def with_missed_payments(loan: Loan, now: int, period: int) -> Loan:
    """Stamp the missed-payment count as of ``now``; closed loans are returned unchanged."""
    if loan.status.terminal:
        return loan
    return replace(loan, missed_payment_count=missed_periods(loan, now, period))


def apply_interest_payment(loan: Loan, supplied_value: Decimal, paid_at: int) -> Loan:
    ensure_open(loan)
    with localcontext(AMOUNTS):
        accrued = loan.interest_accrued + Decimal(supplied_value)
    return replace(
        loan,
        interest_accrued=accrued,
        last_interest_paid_time=int(paid_at),
        missed_payment_count=0,
    )


def require_repayment(loan: Loan, supplied_value: Decimal) -> None:
    ensure_open(loan)
    if supplied_value < loan.outstanding:
        raise InsufficientFunds(
            "supplied value does not cover the outstanding repayment",
            {"loanId": loan.loan_id, "suppliedValue": supplied_value, "outstanding": loan.outstanding},
        )


def apply_repayment(loan: Loan) -> Loan:
    ensure_open(loan)
    return replace(loan, status=LoanStatus.REPAID)


def apply_default(loan: Loan, now: int, duration: int) -> Loan:
    ensure_open(loan)
    if not is_expired(loan, now, duration):
        raise InvalidRequest(
            "loan period has not yet expired",
            {"loanId": loan.loan_id, "expiresAt": loan.expires_at(duration)},
        )
    return replace(loan, status=LoanStatus.DEFAULTED)


def from_record(record: LoanRecord, previous: Optional[Loan] = None) -> Loan:
    """Project a ledger read onto the local view without regressing it.

    Reads may lag a just-finalized write, so a terminal local status is kept
    over an ``active`` ledger report, and the amounts and start time fixed at
    creation are never overwritten.
    """
    if record.defaulted:
        status = LoanStatus.DEFAULTED
    elif record.repaid:
        status = LoanStatus.REPAID
    else:
        status = LoanStatus.ACTIVE
    observed = Loan(
        loan_id=record.loan_id,
        collection_id=record.collection_id,
        token_id=record.token_id,
        borrower_address=record.borrower,
        advance_amount=record.advance_amount,
        repayment_amount=record.repayment_amount,
        interest_accrued=record.interest_paid,
        start_time=record.start_time,
        last_interest_paid_time=record.last_interest_paid_time or record.start_time,
    )
    if previous is None:
        return replace(observed, status=status)
    if previous.status.terminal:
        status = previous.status
    return replace(
        observed,
        advance_amount=previous.advance_amount,
        repayment_amount=previous.repayment_amount,
        start_time=previous.start_time,
        interest_accrued=max(previous.interest_accrued, observed.interest_accrued),
        last_interest_paid_time=max(previous.last_interest_paid_time, observed.last_interest_paid_time),
        status=status,
    )


__all__ = [
    "Loan",
    "LoanStatus",
    "apply_default",
    "apply_interest_payment",
    "apply_repayment",
    "ensure_open",
    "from_record",
    "is_expired",
    "missed_periods",
    "open_loan",
    "require_interest_payment",
    "require_repayment",
    "with_missed_payments",
]
