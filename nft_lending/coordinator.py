"""Loan lifecycle coordinator: validates, prices, submits and reconciles."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Callable, Dict, List, Optional

from eth_utils import is_address, to_checksum_address

from .config import CoordinatorConfig
from .errors import (
    CostTooHigh,
    Indeterminate,
    InsufficientFunds,
    InvalidRequest,
    LoanClosed,
    LoanNotFound,
    NotEligible,
    Rejected,
    Unauthorized,
    UnknownOperation,
)
from .inflight import InFlightEntry, InFlightGuard
from .ledger import (
    Asset,
    CostEstimate,
    FinalityOutcome,
    FinalityState,
    LedgerGateway,
    LedgerOperation,
    OperationKind,
    PendingHandle,
    UNCONFIRMED_SUBMISSION,
)
from .loans import (
    Loan,
    LoanStatus,
    apply_default,
    apply_interest_payment,
    apply_repayment,
    ensure_open,
    is_expired,
    open_loan,
    require_interest_payment,
    require_repayment,
    with_missed_payments,
)
from .registry import CollateralTerms, EligibilityRegistry, normalize_collection
from .store import LoanStore
from .valuation import AMOUNTS, quote

LOGGER = logging.getLogger("nft-lending.coordinator")


def _address(value: Any, field: str) -> str:
    candidate = str(value or "").strip()
    if not is_address(candidate):
        raise InvalidRequest(f"{field} must be a valid address", {field: candidate})
    return to_checksum_address(candidate)


def _integer(value: Any, field: str) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be an integer", {field: value})
    if parsed < 0:
        raise InvalidRequest(f"{field} must not be negative", {field: value})
    return parsed


@dataclass
class _Plan:
    op: LedgerOperation
    apply: Callable[[FinalityOutcome], Any]
    loan_id: Optional[int] = None


class LendingCoordinator:
    """Single entry point for every loan operation.

    Mutating operations follow one path: read the freshest ledger state,
    validate it against the loan lifecycle, price the operation, submit it
    under the in-flight guard, then wait a bounded time for finality. The
    guard is released by the finality callback, so an operation the caller
    stopped waiting for still updates the projection when it lands.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        registry: EligibilityRegistry,
        config: CoordinatorConfig,
        *,
        store: Optional[LoanStore] = None,
        guard: Optional[InFlightGuard] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.config = config
        self.store = store or LoanStore()
        self.guard = guard or InFlightGuard(ttl=config.inflight_ttl)
        self.clock = clock or gateway.latest_timestamp
        self._last_gas: Dict[OperationKind, int] = {}
        self._cost_lock = threading.Lock()

    # ------------------------------------------------------------------ input

    def _amount(self, value: Any, field: str = "suppliedValue") -> Decimal:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, AttributeError):
            raise InvalidRequest(f"{field} must be a decimal amount", {field: value})
        if not amount.is_finite() or amount < 0:
            raise InvalidRequest(f"{field} must be a non-negative amount", {field: value})
        try:
            with localcontext(AMOUNTS):
                finer = amount % self.config.min_value_unit != 0
        except InvalidOperation:
            raise InvalidRequest(f"{field} is out of range", {field: value})
        if finer:
            raise InvalidRequest(
                f"{field} is finer than the minimum value unit",
                {field: value, "minValueUnit": self.config.min_value_unit},
            )
        return amount

    # ------------------------------------------------------------------ reads

    def collateral_options(self, owner_address: Any) -> List[Dict[str, Any]]:
        owner = _address(owner_address, "ownerAddress")
        options: List[Dict[str, Any]] = []
        for terms in self.registry.collections():
            for asset in self.gateway.assets_of(owner, terms.collection_id):
                amounts = quote(asset.declared_value, terms, self.config.min_value_unit)
                options.append(
                    {
                        "asset": asset.to_dict(),
                        "terms": terms.to_dict(),
                        "advanceAmount": amounts.advance_amount,
                        "repaymentAmount": amounts.repayment_amount,
                    }
                )
        return options

    def refresh(self, loan_id: int) -> Loan:
        record = self.gateway.read_loan(loan_id)
        if record is None:
            cached = self.store.get(loan_id)
            if cached is not None:
                # a just-created loan may not be visible to reads yet
                return cached
            raise LoanNotFound(f"loan {loan_id} not found", {"loanId": loan_id})
        return self.store.observe(record)

    def _as_of(self, loan: Loan, now: Optional[int] = None) -> Loan:
        return with_missed_payments(loan, self.clock() if now is None else now, self.config.interest_period)

    def loan(self, loan_id: Any) -> Loan:
        return self._as_of(self.refresh(_integer(loan_id, "loanId")))

    def loans(self, borrower_address: Any) -> List[Loan]:
        borrower = _address(borrower_address, "borrowerAddress")
        for loan_id in self.gateway.loans_of(borrower):
            record = self.gateway.read_loan(loan_id)
            if record is not None:
                self.store.observe(record)
        now = self.clock()
        return [self._as_of(loan, now) for loan in self.store.list(borrower)]

    def history(self, loan_id: Any) -> List[Dict[str, Any]]:
        return self.store.history(_integer(loan_id, "loanId"))

    def operation_status(self, handle_id: str) -> Dict[str, Any]:
        handle = self.gateway.handle(str(handle_id or "").strip())
        if handle is None:
            raise UnknownOperation("no tracked operation with that handle", {"handle": handle_id})
        outcome = handle.outcome
        payload: Dict[str, Any] = {
            "handle": handle.handle_id,
            "kind": handle.operation.kind.value,
            "state": outcome.state.value if outcome else FinalityState.PENDING.value,
        }
        if outcome is not None:
            payload.update({"reason": outcome.reason, "blockNumber": outcome.block_number, "fee": outcome.fee})
        if isinstance(handle.result, Loan):
            payload["loan"] = self._as_of(handle.result).to_dict()
        return payload

    def metrics(self) -> Dict[str, Any]:
        return {"loans": self.store.counts(), "inFlight": len(self.guard)}

    # -------------------------------------------------------------- mutations

    def _closed_fast(self, loan_id: int) -> None:
        cached = self.store.get(loan_id)
        if cached is not None:
            ensure_open(cached)

    @staticmethod
    def _require_borrower(loan: Loan, actor: str) -> None:
        if loan.borrower_address.lower() != actor.lower():
            raise Unauthorized(
                "only the borrower may act on this loan",
                {"loanId": loan.loan_id, "actorAddress": actor},
            )

    def _estimate(self, op: LedgerOperation) -> CostEstimate:
        estimate = self.gateway.estimate_cost(op)
        if estimate.would_revert:
            raise Rejected(estimate.revert_reason or "reverted", {"stage": "estimate", "kind": op.kind.value})
        return estimate

    def _preflight(self, plan: _Plan, prepare: Callable[[], _Plan]) -> _Plan:
        estimate = self._estimate(plan.op)
        with self._cost_lock:
            previous = self._last_gas.get(plan.op.kind)
            self._last_gas[plan.op.kind] = estimate.gas
        if previous and estimate.gas > previous * self.config.cost_divergence_factor:
            LOGGER.warning(
                "%s cost jumped from %s to %s gas, re-validating against fresh state",
                plan.op.kind.value,
                previous,
                estimate.gas,
            )
            plan = prepare()
            estimate = self._estimate(plan.op)
        cap = self.config.max_operation_fee
        if cap is not None and estimate.fee > cap:
            raise CostTooHigh(
                "operation fee exceeds the configured maximum",
                {"fee": estimate.fee, "maxFee": cap, "gas": estimate.gas},
            )
        balance = self.gateway.balance_of(plan.op.sender)
        with localcontext(AMOUNTS):
            required = plan.op.value + estimate.fee
        if balance < required:
            raise InsufficientFunds(
                "balance cannot cover value and fee",
                {"balance": balance, "required": required, "fee": estimate.fee},
            )
        return plan

    def _finalize(self, entry: InFlightEntry, handle: PendingHandle, plan: _Plan, outcome: FinalityOutcome) -> None:
        release = True
        try:
            if outcome.state is FinalityState.CONFIRMED:
                handle.result = plan.apply(outcome)
                loan_id = plan.loan_id
                if loan_id is None and isinstance(handle.result, Loan):
                    loan_id = handle.result.loan_id
                if loan_id is not None:
                    self.store.record_event(
                        loan_id,
                        f"{plan.op.kind.value}-confirmed",
                        {"handle": handle.handle_id, "block": outcome.block_number, "fee": str(outcome.fee or 0)},
                    )
            elif outcome.state is FinalityState.REVERTED:
                LOGGER.warning("%s %s rejected by ledger: %s", plan.op.kind.value, handle.handle_id, outcome.reason)
                if plan.loan_id is not None:
                    self.store.record_event(
                        plan.loan_id,
                        f"{plan.op.kind.value}-rejected",
                        {"handle": handle.handle_id, "reason": outcome.reason},
                    )
            else:
                LOGGER.error("%s %s left unresolved: %s", plan.op.kind.value, handle.handle_id, outcome.reason)
                # the operation may still land; the key stays busy until the guard TTL lapses
                release = outcome.reason != UNCONFIRMED_SUBMISSION
        finally:
            if release:
                self.guard.release(entry)

    def _coordinate(self, key: str, kind: OperationKind, prepare: Callable[[], _Plan]) -> PendingHandle:
        entry = self.guard.acquire(key, kind.value)
        submitted = False
        try:
            plan = self._preflight(prepare(), prepare)
            handle = self.gateway.submit(plan.op, self.gateway.signer_for(plan.op.sender))
            submitted = True
            self.guard.attach(entry, handle.handle_id)
            handle.add_done_callback(lambda outcome: self._finalize(entry, handle, plan, outcome))
        finally:
            if not submitted:
                self.guard.release(entry)
        outcome = self.gateway.await_finality(handle, self.config.finality_timeout)
        if outcome.state is FinalityState.PENDING:
            raise Indeterminate(handle.handle_id, {"kind": kind.value})
        if outcome.state is FinalityState.REVERTED:
            raise Rejected(outcome.reason or "reverted", {"handle": handle.handle_id, "kind": kind.value})
        return handle

    def borrow(self, collection_id: Any, token_id: Any, actor_address: Any) -> Dict[str, Any]:
        actor = _address(actor_address, "actorAddress")
        terms = self.registry.terms_for(normalize_collection(collection_id))
        token = _integer(token_id, "tokenId")

        def prepare() -> _Plan:
            asset = self.gateway.read_asset(terms.collection_id, token)
            if asset.owner_address.lower() != actor.lower():
                raise Unauthorized(
                    "actor does not own this token",
                    {"collectionId": terms.collection_id, "tokenId": token, "owner": asset.owner_address},
                )
            amounts = quote(asset.declared_value, terms, self.config.min_value_unit)
            if amounts.advance_amount <= 0:
                raise NotEligible("token has no collateral value", {"collectionId": terms.collection_id, "tokenId": token})
            op = LedgerOperation(OperationKind.BORROW, actor, (terms.collection_id, token))
            return _Plan(op=op, apply=lambda outcome: self._open(outcome, asset, terms, actor))

        handle = self._coordinate(f"asset:{terms.collection_id.lower()}:{token}", OperationKind.BORROW, prepare)
        loan = handle.result
        if not isinstance(loan, Loan):
            # confirmed, but the loan is not yet readable; the caller polls the handle
            raise Indeterminate(handle.handle_id, {"kind": OperationKind.BORROW.value, "confirmed": True})
        return {
            "loanId": loan.loan_id,
            "advanceAmount": loan.advance_amount,
            "repaymentAmount": loan.repayment_amount,
            "status": loan.status.value,
            "transaction": handle.handle_id,
        }

    def _locate_loan_id(self, actor: str, asset: Asset) -> Optional[int]:
        for loan_id in reversed(self.gateway.loans_of(actor)):
            record = self.gateway.read_loan(loan_id)
            if (
                record is not None
                and record.collection_id.lower() == asset.collection_id.lower()
                and record.token_id == asset.token_id
                and not (record.repaid or record.defaulted)
            ):
                return record.loan_id
        return None

    def _open(self, outcome: FinalityOutcome, asset: Asset, terms: CollateralTerms, actor: str) -> Optional[Loan]:
        created = outcome.events.get("LoanCreated") or {}
        loan_id = created.get("loanId")
        if loan_id is None:
            loan_id = self._locate_loan_id(actor, asset)
        if loan_id is None:
            LOGGER.error("Borrow %s confirmed but no loan id could be found", outcome.handle_id)
            return None
        loan = open_loan(
            int(loan_id),
            collection_id=asset.collection_id,
            token_id=asset.token_id,
            borrower=actor,
            declared_value=asset.declared_value,
            terms=terms,
            finalized_at=outcome.timestamp if outcome.timestamp is not None else self.clock(),
            unit=self.config.min_value_unit,
        )
        reported = created.get("loanAmount")
        if reported is not None:
            LOGGER.debug("Ledger reported advance %s wei for loan %s", reported, loan.loan_id)
        self.store.put(loan)
        self.store.record_event(
            loan.loan_id,
            "loan-opened",
            {"advanceAmount": str(loan.advance_amount), "repaymentAmount": str(loan.repayment_amount)},
        )
        LOGGER.info("Loan %s opened for %s", loan.loan_id, actor)
        return loan

    def repay(self, loan_id: Any, actor_address: Any, supplied_value: Any) -> Dict[str, Any]:
        actor = _address(actor_address, "actorAddress")
        target = _integer(loan_id, "loanId")
        value = self._amount(supplied_value)
        self._closed_fast(target)

        def prepare() -> _Plan:
            loan = ensure_open(self.refresh(target))
            self._require_borrower(loan, actor)
            require_repayment(loan, value)
            op = LedgerOperation(OperationKind.REPAY, actor, (target,), value)
            return _Plan(
                op=op,
                apply=lambda outcome: self.store.transition(target, apply_repayment, LoanStatus.REPAID),
                loan_id=target,
            )

        handle = self._coordinate(f"loan:{target}", OperationKind.REPAY, prepare)
        return self._loan_result(target, handle)

    def pay_interest(self, loan_id: Any, actor_address: Any, supplied_value: Any) -> Dict[str, Any]:
        actor = _address(actor_address, "actorAddress")
        target = _integer(loan_id, "loanId")
        value = self._amount(supplied_value)
        self._closed_fast(target)

        def apply(outcome: FinalityOutcome) -> Loan:
            paid_at = outcome.timestamp if outcome.timestamp is not None else self.clock()
            return self.store.transition(target, lambda loan: apply_interest_payment(loan, value, paid_at))

        def prepare() -> _Plan:
            loan = ensure_open(self.refresh(target))
            self._require_borrower(loan, actor)
            require_interest_payment(loan, value)
            op = LedgerOperation(OperationKind.PAY_INTEREST, actor, (target,), value)
            return _Plan(op=op, apply=apply, loan_id=target)

        handle = self._coordinate(f"loan:{target}", OperationKind.PAY_INTEREST, prepare)
        return self._loan_result(target, handle)

    def check_default(self, loan_id: Any, actor_address: Any) -> Dict[str, Any]:
        actor = _address(actor_address, "actorAddress")
        target = _integer(loan_id, "loanId")
        self._closed_fast(target)
        duration = self.config.loan_duration

        loan = ensure_open(self.refresh(target))
        now = self.clock()
        if not is_expired(loan, now, duration):
            return {
                "loanId": target,
                "status": loan.status.value,
                "reason": "not-expired",
                "expiresAt": loan.expires_at(duration),
            }

        def apply(outcome: FinalityOutcome) -> Loan:
            observed_at = max(outcome.timestamp or 0, now)
            return self.store.transition(
                target, lambda current: apply_default(current, observed_at, duration), LoanStatus.DEFAULTED
            )

        def prepare() -> _Plan:
            current = ensure_open(self.refresh(target))
            if not is_expired(current, now, duration):
                raise InvalidRequest("loan period has not yet expired", {"loanId": target})
            op = LedgerOperation(OperationKind.CHECK_DEFAULT, actor, (target,))
            return _Plan(op=op, apply=apply, loan_id=target)

        handle = self._coordinate(f"loan:{target}", OperationKind.CHECK_DEFAULT, prepare)
        result = self._loan_result(target, handle)
        result["reason"] = "expired"
        return result

    def withdraw(self, actor_address: Any) -> Dict[str, Any]:
        actor = _address(actor_address, "actorAddress")

        def prepare() -> _Plan:
            owner = self.gateway.contract_owner()
            if owner.lower() != actor.lower():
                raise Unauthorized("only the contract owner can withdraw funds", {"actorAddress": actor})
            op = LedgerOperation(OperationKind.WITHDRAW, actor)
            return _Plan(op=op, apply=lambda outcome: LOGGER.info("Withdrawal %s confirmed", outcome.handle_id))

        handle = self._coordinate("contract:withdraw", OperationKind.WITHDRAW, prepare)
        return {"status": "withdrawn", "transaction": handle.handle_id}

    def _loan_result(self, loan_id: int, handle: PendingHandle) -> Dict[str, Any]:
        loan = handle.result if isinstance(handle.result, Loan) else self.store.get(loan_id)
        if loan is None:
            raise LoanClosed(f"loan {loan_id} missing from projection", {"loanId": loan_id})
        loan = self._as_of(loan)
        return {"loanId": loan_id, "status": loan.status.value, "transaction": handle.handle_id, "loan": loan.to_dict()}


__all__ = ["LendingCoordinator"]
