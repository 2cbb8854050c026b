"""Ledger Gateway contract, value types and the shared finality tracker."""
from __future__ import annotations

import abc
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import requests

from .errors import Unreachable

LOGGER = logging.getLogger("nft-lending.ledger")

T = TypeVar("T")

NETWORK_ERRORS: Tuple[type, ...] = (
    ConnectionError,
    TimeoutError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)

# Outcome reason for a send whose network failure left its fate unknown.
UNCONFIRMED_SUBMISSION = "submission-unconfirmed"


class OperationKind(str, Enum):
    BORROW = "borrow"
    REPAY = "repay"
    PAY_INTEREST = "pay_interest"
    CHECK_DEFAULT = "check_default"
    WITHDRAW = "withdraw"


@dataclass(frozen=True)
class LedgerOperation:
    kind: OperationKind
    sender: str
    args: Tuple[Any, ...] = ()
    value: Decimal = Decimal(0)


@dataclass(frozen=True)
class CostEstimate:
    gas: int
    gas_price: int
    fee: Decimal
    revert_reason: Optional[str] = None

    @property
    def would_revert(self) -> bool:
        return self.revert_reason is not None


class FinalityState(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    PENDING = "pending"


@dataclass
class FinalityOutcome:
    state: FinalityState
    handle_id: str
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    fee: Optional[Decimal] = None
    reason: Optional[str] = None
    events: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "handle": self.handle_id,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "fee": self.fee,
            "reason": self.reason,
        }


class PendingHandle:
    """Tracking handle for a submitted operation; resolved exactly once."""

    def __init__(self, handle_id: str, operation: LedgerOperation, submitted_at: Optional[float] = None) -> None:
        self.handle_id = handle_id
        self.operation = operation
        self.submitted_at = time.monotonic() if submitted_at is None else submitted_at
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._outcome: Optional[FinalityOutcome] = None
        self._callbacks: List[Callable[[FinalityOutcome], None]] = []
        self.result: Any = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    @property
    def outcome(self) -> Optional[FinalityOutcome]:
        return self._outcome

    def add_done_callback(self, callback: Callable[[FinalityOutcome], None]) -> None:
        with self._lock:
            if self._outcome is None:
                self._callbacks.append(callback)
                return
            outcome = self._outcome
        callback(outcome)

    def resolve(self, outcome: FinalityOutcome) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(outcome)
            except Exception:
                LOGGER.exception("Finality callback failed for %s", self.handle_id)
        # waiters wake only after callbacks have updated local state
        self._event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[FinalityOutcome]:
        self._event.wait(timeout)
        return self._outcome


@dataclass(frozen=True)
class LoanRecord:
    """Loan as the lending contract reports it."""

    loan_id: int
    borrower: str
    collection_id: str
    token_id: int
    advance_amount: Decimal
    repayment_amount: Decimal
    interest_paid: Decimal
    start_time: int
    last_interest_paid_time: int
    repaid: bool
    defaulted: bool


@dataclass(frozen=True)
class Asset:
    collection_id: str
    token_id: int
    owner_address: str
    declared_value: Decimal
    token_uri: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collectionId": self.collection_id,
            "tokenId": self.token_id,
            "ownerAddress": self.owner_address,
            "declaredValue": self.declared_value,
            "tokenURI": self.token_uri,
        }


def with_retries(
    call: Callable[[], T],
    *,
    description: str,
    attempts: int = 3,
    base_delay: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``call`` retrying network failures with exponential backoff."""
    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            return call()
        except NETWORK_ERRORS as exc:
            last_error = exc
            if attempt + 1 >= attempts:
                break
            delay = base_delay * (2 ** attempt)
            LOGGER.warning(
                "%s failed (%s), retrying in %.2fs (attempt %s/%s)",
                description,
                exc,
                delay,
                attempt + 1,
                attempts,
            )
            sleep(delay)
    LOGGER.error("%s failed after %s attempts: %s", description, attempts, last_error)
    raise Unreachable(f"ledger unreachable during {description}", {"attempts": attempts, "error": str(last_error)})


class LedgerGateway(abc.ABC):
    """Narrow interface over the external ledger."""

    @abc.abstractmethod
    def estimate_cost(self, op: LedgerOperation) -> CostEstimate:
        ...

    @abc.abstractmethod
    def submit(self, op: LedgerOperation, signer: Any = None) -> PendingHandle:
        ...

    def await_finality(self, handle: PendingHandle, timeout: Optional[float] = None) -> FinalityOutcome:
        outcome = handle.wait(timeout)
        if outcome is None:
            return FinalityOutcome(state=FinalityState.PENDING, handle_id=handle.handle_id)
        return outcome

    @abc.abstractmethod
    def handle(self, handle_id: str) -> Optional[PendingHandle]:
        ...

    @abc.abstractmethod
    def read_loan(self, loan_id: int) -> Optional[LoanRecord]:
        ...

    @abc.abstractmethod
    def loans_of(self, borrower: str) -> List[int]:
        ...

    @abc.abstractmethod
    def read_asset(self, collection_id: str, token_id: int) -> Asset:
        ...

    @abc.abstractmethod
    def assets_of(self, owner: str, collection_id: str) -> List[Asset]:
        ...

    @abc.abstractmethod
    def contract_owner(self) -> str:
        ...

    @abc.abstractmethod
    def balance_of(self, address: str) -> Decimal:
        ...

    def latest_timestamp(self) -> int:
        return int(time.time())

    def signer_for(self, address: str) -> Any:
        return None

    def start(self) -> None:
        return None

    def close(self) -> None:
        return None


class FinalityTracker(threading.Thread):
    """Polls every pending handle on one thread and resolves them as they finalize."""

    def __init__(
        self,
        poll: Callable[[PendingHandle], Optional[FinalityOutcome]],
        *,
        interval: float = 2.0,
        max_wait: float = 600.0,
        history_size: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(daemon=True, name="finality-tracker")
        self._poll = poll
        self.interval = interval
        self.max_wait = max_wait
        self.history_size = history_size
        self._clock = clock
        self._pending: Dict[str, PendingHandle] = {}
        self._resolved: Dict[str, PendingHandle] = {}
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()

    def track(self, handle: PendingHandle) -> PendingHandle:
        with self._lock:
            if handle.done:
                self._remember(handle)
            else:
                self._pending[handle.handle_id] = handle
        self._wake.set()
        return handle

    def _remember(self, handle: PendingHandle) -> None:
        self._resolved[handle.handle_id] = handle
        while len(self._resolved) > self.history_size:
            self._resolved.pop(next(iter(self._resolved)))

    def get(self, handle_id: str) -> Optional[PendingHandle]:
        with self._lock:
            return self._pending.get(handle_id) or self._resolved.get(handle_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def poll_once(self) -> int:
        with self._lock:
            pending = list(self._pending.values())
        resolved = 0
        for handle in pending:
            try:
                outcome = self._poll(handle)
            except (Unreachable,) + NETWORK_ERRORS as exc:
                LOGGER.warning("Finality poll for %s failed: %s", handle.handle_id, exc)
                outcome = None
            if outcome is None and self._clock() - handle.submitted_at > self.max_wait:
                LOGGER.error("Giving up tracking %s after %.0fs", handle.handle_id, self.max_wait)
                outcome = FinalityOutcome(
                    state=FinalityState.PENDING,
                    handle_id=handle.handle_id,
                    reason="tracking-expired",
                )
            if outcome is None:
                continue
            with self._lock:
                self._pending.pop(handle.handle_id, None)
                self._remember(handle)
            handle.resolve(outcome)
            resolved += 1
        return resolved

    def run(self) -> None:  # pragma: no cover - background loop
        LOGGER.info("Finality tracker started")
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as exc:
                LOGGER.exception("Finality tracker error: %s", exc)
            self._wake.clear()
            if self.pending_count():
                self._stop_event.wait(self.interval)
            else:
                self._wake.wait(self.interval)
        LOGGER.info("Finality tracker stopped")

    def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()


__all__ = [
    "Asset",
    "CostEstimate",
    "FinalityOutcome",
    "FinalityState",
    "FinalityTracker",
    "LedgerGateway",
    "LedgerOperation",
    "LoanRecord",
    "NETWORK_ERRORS",
    "OperationKind",
    "PendingHandle",
    "UNCONFIRMED_SUBMISSION",
    "with_retries",
]
