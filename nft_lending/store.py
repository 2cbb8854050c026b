"""In-memory loan projections with a per-loan event history."""
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .ledger import LoanRecord
from .loans import Loan, LoanStatus, from_record


class LoanStore:
    """Thread-safe cache of the coordinator's view of each loan.

    The ledger owns loan state; entries here are refreshed from every read and
    from every finalized operation, and are lost on restart.
    """

    def __init__(self, history_limit: int = 200, clock: Callable[[], float] = time.time) -> None:
        self._loans: Dict[int, Loan] = {}
        self._events: Dict[int, Deque[Dict[str, Any]]] = {}
        self._history_limit = history_limit
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, loan_id: int) -> Optional[Loan]:
        with self._lock:
            return self._loans.get(int(loan_id))

    def put(self, loan: Loan) -> Loan:
        with self._lock:
            self._loans[loan.loan_id] = loan
        return loan

    def observe(self, record: LoanRecord) -> Loan:
        with self._lock:
            merged = from_record(record, self._loans.get(record.loan_id))
            self._loans[record.loan_id] = merged
            return merged

    def transition(self, loan_id: int, change: Callable[[Loan], Loan], target: Optional[LoanStatus] = None) -> Loan:
        """Apply ``change`` to the stored loan.

        When the loan already sits in ``target`` (a read saw the write land
        first) the stored loan is returned unchanged.
        """
        with self._lock:
            current = self._loans[int(loan_id)]
            if target is not None and current.status is target:
                return current
            updated = change(current)
            self._loans[updated.loan_id] = updated
        self.record_event(updated.loan_id, "status-updated", {"from": current.status.value, "to": updated.status.value})
        return updated

    def list(self, borrower: Optional[str] = None) -> List[Loan]:
        with self._lock:
            loans = list(self._loans.values())
        if borrower:
            borrower_norm = borrower.strip().lower()
            loans = [loan for loan in loans if loan.borrower_address.lower() == borrower_norm]
        return sorted(loans, key=lambda loan: loan.loan_id)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            loans = list(self._loans.values())
        counts = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            counts[loan.status.value] += 1
        counts["total"] = len(loans)
        return counts

    def record_event(self, loan_id: int, event: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        entry = {"event": event, "metadata": metadata or {}, "timestamp": int(self._clock())}
        with self._lock:
            bucket = self._events.setdefault(int(loan_id), deque(maxlen=self._history_limit))
            bucket.append(entry)
        return entry

    def history(self, loan_id: int) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events.get(int(loan_id), ()))


__all__ = ["LoanStore"]
