import threading
import unittest
from dataclasses import replace
from decimal import Decimal

from fake_ledger import ALICE, BAYC, BOB, OWNER, PUNKS, FakeLedgerGateway

from nft_lending.config import CoordinatorConfig
from nft_lending.coordinator import LendingCoordinator
from nft_lending.errors import (
    Busy,
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
    Unreachable,
)
from nft_lending.inflight import InFlightGuard
from nft_lending.ledger import OperationKind
from nft_lending.loans import LoanStatus
from nft_lending.registry import EligibilityRegistry


def _config(**overrides) -> CoordinatorConfig:
    settings = {"loan_duration": 100, "interest_period": 10, "finality_timeout": 2.0}
    settings.update(overrides)
    return CoordinatorConfig(**settings)


class CoordinatorTestCase(unittest.TestCase):
    config_overrides: dict = {}

    def setUp(self) -> None:
        self.gateway = FakeLedgerGateway()
        self.coordinator = LendingCoordinator(
            self.gateway, EligibilityRegistry.from_config(None), _config(**self.config_overrides)
        )
        self.gateway.mint(PUNKS, 1, ALICE, "10")

    def _borrow(self) -> int:
        return self.coordinator.borrow(PUNKS, 1, ALICE)["loanId"]


class BorrowTests(CoordinatorTestCase):
    def test_borrow_uses_collection_terms(self) -> None:
        result = self.coordinator.borrow(PUNKS, 1, ALICE)
        self.assertEqual(result["advanceAmount"], Decimal("7"))
        self.assertEqual(result["repaymentAmount"], Decimal("8.4"))
        loan = self.coordinator.store.get(result["loanId"])
        self.assertEqual(loan.status, LoanStatus.ACTIVE)
        self.assertEqual(loan.start_time, 0)
        self.assertEqual(loan.borrower_address, ALICE)
        self.assertGreaterEqual(loan.repayment_amount, loan.advance_amount)

    def test_ineligible_collection_never_reaches_ledger(self) -> None:
        with self.assertRaises(NotEligible):
            self.coordinator.borrow("0x4444444444444444444444444444444444444444", 1, ALICE)
        self.assertEqual(self.gateway.submissions, [])

    def test_only_token_owner_can_borrow(self) -> None:
        with self.assertRaises(Unauthorized):
            self.coordinator.borrow(PUNKS, 1, BOB)
        self.assertEqual(self.gateway.submissions, [])

    def test_collateral_options_cover_every_eligible_collection(self) -> None:
        self.gateway.mint(BAYC, 5, ALICE, "20")
        self.gateway.mint(BAYC, 6, BOB, "20")
        options = self.coordinator.collateral_options(ALICE)
        by_token = {option["asset"]["tokenId"]: option for option in options}
        self.assertEqual(sorted(by_token), [1, 5])
        self.assertEqual(by_token[5]["advanceAmount"], Decimal("12"))
        self.assertEqual(by_token[5]["repaymentAmount"], Decimal("14"))
        self.assertEqual(by_token[1]["terms"]["advanceFraction"], "0.7")

    def test_invalid_owner_address_is_rejected(self) -> None:
        with self.assertRaises(InvalidRequest):
            self.coordinator.collateral_options("not-an-address")


class RepaymentTests(CoordinatorTestCase):
    def test_repay_closes_loan_for_good(self) -> None:
        loan_id = self._borrow()
        result = self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(result["status"], "repaid")
        submitted = len(self.gateway.submissions)
        with self.assertRaises(LoanClosed):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        with self.assertRaises(LoanClosed):
            self.coordinator.pay_interest(loan_id, ALICE, "1")
        with self.assertRaises(LoanClosed):
            self.coordinator.check_default(loan_id, BOB)
        self.assertEqual(len(self.gateway.submissions), submitted)

    def test_underpayment_is_refused_before_submission(self) -> None:
        loan_id = self._borrow()
        with self.assertRaises(InsufficientFunds):
            self.coordinator.repay(loan_id, ALICE, "8")
        self.assertEqual(len(self.gateway.submissions), 1)

    def test_only_borrower_can_repay(self) -> None:
        loan_id = self._borrow()
        with self.assertRaises(Unauthorized):
            self.coordinator.repay(loan_id, BOB, "8.4")

    def test_malformed_amounts_are_invalid(self) -> None:
        loan_id = self._borrow()
        with self.assertRaises(InvalidRequest):
            self.coordinator.repay(loan_id, ALICE, "abc")
        with self.assertRaises(InvalidRequest):
            self.coordinator.repay(loan_id, ALICE, "0.0000000000000000001")
        with self.assertRaises(InvalidRequest):
            self.coordinator.repay(loan_id, ALICE, "-1")
        with self.assertRaises(InvalidRequest):
            self.coordinator.repay(loan_id, ALICE, "1e999999")
        self.assertEqual(len(self.gateway.submissions), 1)

    def test_large_amount_is_checked_against_balance(self) -> None:
        loan_id = self._borrow()
        with self.assertRaises(InsufficientFunds) as ctx:
            self.coordinator.repay(loan_id, ALICE, "10000000000")
        self.assertEqual(ctx.exception.details["required"], Decimal("10000000000.00005"))
        self.assertEqual(len(self.gateway.submissions), 1)

    def test_interest_payment_reduces_outstanding(self) -> None:
        loan_id = self._borrow()
        self.gateway.now = 25
        self.assertEqual(self.coordinator.loan(loan_id).missed_payment_count, 2)
        self.assertEqual(self.coordinator.loans(ALICE)[0].missed_payment_count, 2)
        result = self.coordinator.pay_interest(loan_id, ALICE, "1")
        self.assertEqual(result["loan"]["interestAccrued"], Decimal("1"))
        self.assertEqual(result["loan"]["missedPaymentCount"], 0)
        self.gateway.now = 47
        self.assertEqual(self.coordinator.loan(loan_id).missed_payment_count, 2)
        self.assertEqual(result["loan"]["lastInterestPaidTime"], 25)
        with self.assertRaises(InsufficientFunds):
            self.coordinator.repay(loan_id, ALICE, "7")
        self.assertEqual(self.coordinator.repay(loan_id, ALICE, "7.4")["status"], "repaid")

    def test_zero_interest_payment_is_invalid(self) -> None:
        loan_id = self._borrow()
        with self.assertRaises(InvalidRequest):
            self.coordinator.pay_interest(loan_id, ALICE, "0")

    def test_unknown_loan(self) -> None:
        with self.assertRaises(LoanNotFound):
            self.coordinator.repay(99, ALICE, "1")

    def test_stale_ledger_read_does_not_reopen_loan(self) -> None:
        loan_id = self._borrow()
        self.coordinator.repay(loan_id, ALICE, "8.4")
        self.gateway.loans[loan_id] = replace(self.gateway.loans[loan_id], repaid=False)
        self.assertEqual(self.coordinator.loan(loan_id).status, LoanStatus.REPAID)

    def test_loans_and_history(self) -> None:
        loan_id = self._borrow()
        self.coordinator.repay(loan_id, ALICE, "8.4")
        loans = self.coordinator.loans(ALICE)
        self.assertEqual([loan.loan_id for loan in loans], [loan_id])
        self.assertEqual(self.coordinator.loans(BOB), [])
        events = [entry["event"] for entry in self.coordinator.history(loan_id)]
        self.assertIn("loan-opened", events)
        self.assertIn("status-updated", events)
        self.assertIn("repay-confirmed", events)
        self.assertEqual(self.coordinator.metrics()["loans"]["repaid"], 1)


class DefaultTests(CoordinatorTestCase):
    def test_default_waits_for_expiry(self) -> None:
        loan_id = self._borrow()
        self.gateway.now = 50
        result = self.coordinator.check_default(loan_id, BOB)
        self.assertEqual(result["status"], "active")
        self.assertEqual(result["reason"], "not-expired")
        self.assertEqual(result["expiresAt"], 100)
        self.assertEqual(len(self.gateway.submissions), 1)

        self.gateway.now = 150
        result = self.coordinator.check_default(loan_id, BOB)
        self.assertEqual(result["status"], "defaulted")
        self.assertEqual(result["reason"], "expired")
        self.assertEqual(len(self.gateway.submissions), 2)
        self.assertEqual(self.gateway.submissions[-1].kind, OperationKind.CHECK_DEFAULT)
        with self.assertRaises(LoanClosed):
            self.coordinator.repay(loan_id, ALICE, "8.4")

    def test_loan_at_exact_duration_is_not_expired(self) -> None:
        loan_id = self._borrow()
        self.gateway.now = 100
        self.assertEqual(self.coordinator.check_default(loan_id, BOB)["reason"], "not-expired")


class WithdrawTests(CoordinatorTestCase):
    def test_non_owner_cannot_withdraw(self) -> None:
        with self.assertRaises(Unauthorized):
            self.coordinator.withdraw(ALICE)
        self.assertEqual(self.gateway.submissions, [])

    def test_owner_withdraws(self) -> None:
        result = self.coordinator.withdraw(OWNER)
        self.assertEqual(result["status"], "withdrawn")
        self.assertEqual(self.gateway.submissions[0].kind, OperationKind.WITHDRAW)

    def test_ownership_is_read_on_every_call(self) -> None:
        self.coordinator.withdraw(OWNER)
        self.gateway.owner = BOB
        with self.assertRaises(Unauthorized):
            self.coordinator.withdraw(OWNER)


class LedgerFailureTests(CoordinatorTestCase):
    def test_unreachable_ledger_releases_guard(self) -> None:
        loan_id = self._borrow()
        self.gateway.failing_submissions = 3
        with self.assertRaises(Unreachable):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(self.gateway.submit_attempts, 4)
        self.assertEqual(len(self.coordinator.guard), 0)
        self.assertEqual(self.coordinator.repay(loan_id, ALICE, "8.4")["status"], "repaid")

    def test_estimate_revert_is_rejected_without_submission(self) -> None:
        loan_id = self._borrow()
        self.gateway.estimate_reverts[OperationKind.REPAY] = "Loan already repaid"
        with self.assertRaises(Rejected) as ctx:
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(ctx.exception.reason_code, "Loan already repaid")
        self.assertEqual(len(self.gateway.submissions), 1)

    def test_finality_revert_keeps_loan_active(self) -> None:
        loan_id = self._borrow()
        self.gateway.finality_reverts[OperationKind.REPAY] = "Transfer failed"
        with self.assertRaises(Rejected) as ctx:
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(ctx.exception.details["reasonCode"], "Transfer failed")
        self.assertEqual(self.coordinator.store.get(loan_id).status, LoanStatus.ACTIVE)
        self.assertEqual(len(self.coordinator.guard), 0)

    def test_insufficient_balance_for_value_and_fee(self) -> None:
        loan_id = self._borrow()
        self.gateway.balances[ALICE.lower()] = Decimal("8.4")
        with self.assertRaises(InsufficientFunds):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(len(self.gateway.submissions), 1)

    def test_unknown_operation_handle(self) -> None:
        with self.assertRaises(UnknownOperation):
            self.coordinator.operation_status("0xdead")


class CostCapTests(CoordinatorTestCase):
    config_overrides = {"max_operation_fee": Decimal("0.0001")}

    def test_fee_above_cap_is_refused(self) -> None:
        loan_id = self._borrow()
        self.gateway.gas[OperationKind.REPAY] = 1_000_000
        with self.assertRaises(CostTooHigh):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(len(self.gateway.submissions), 1)
        self.assertEqual(len(self.coordinator.guard), 0)


class InFlightTests(CoordinatorTestCase):
    def _submit_pending_repay(self, loan_id: int) -> list:
        outcome: list = []

        def _repay() -> None:
            try:
                outcome.append(self.coordinator.repay(loan_id, ALICE, "8.4"))
            except Exception as exc:  # surfaced to the assertions below
                outcome.append(exc)

        self.gateway.auto_finalize = False
        self.gateway.submitted.clear()
        worker = threading.Thread(target=_repay)
        worker.start()
        self.assertTrue(self.gateway.submitted.wait(2))
        return [worker, outcome]

    def test_concurrent_repay_is_busy(self) -> None:
        loan_id = self._borrow()
        worker, outcome = self._submit_pending_repay(loan_id)
        with self.assertRaises(Busy):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.gateway.finalize(list(self.gateway.handles)[-1])
        worker.join(2)
        self.assertEqual(outcome[0]["status"], "repaid")
        repays = [op for op in self.gateway.submissions if op.kind is OperationKind.REPAY]
        self.assertEqual(len(repays), 1)

    def test_repay_lands_after_a_read_already_saw_it(self) -> None:
        loan_id = self._borrow()
        worker, outcome = self._submit_pending_repay(loan_id)
        self.gateway.loans[loan_id] = replace(self.gateway.loans[loan_id], repaid=True)
        self.assertEqual([loan.status for loan in self.coordinator.loans(ALICE)], [LoanStatus.REPAID])
        self.gateway.finalize(list(self.gateway.handles)[-1])
        worker.join(2)
        self.assertEqual(outcome[0]["status"], "repaid")
        events = [entry["event"] for entry in self.coordinator.history(loan_id)]
        self.assertIn("repay-confirmed", events)
        self.assertNotIn("status-updated", events)
        self.assertEqual(len(self.coordinator.guard), 0)


class IndeterminateTests(CoordinatorTestCase):
    config_overrides = {"finality_timeout": 0.05}

    def test_pending_operation_completes_in_background(self) -> None:
        loan_id = self._borrow()
        self.gateway.auto_finalize = False
        with self.assertRaises(Indeterminate) as ctx:
            self.coordinator.repay(loan_id, ALICE, "8.4")
        handle_id = ctx.exception.handle_id
        self.assertEqual(self.coordinator.operation_status(handle_id)["state"], "pending")
        with self.assertRaises(Busy):
            self.coordinator.repay(loan_id, ALICE, "8.4")

        self.gateway.finalize(handle_id)
        self.assertEqual(self.coordinator.store.get(loan_id).status, LoanStatus.REPAID)
        self.assertEqual(len(self.coordinator.guard), 0)
        status = self.coordinator.operation_status(handle_id)
        self.assertEqual(status["state"], "confirmed")
        self.assertEqual(status["loan"]["status"], "repaid")
        with self.assertRaises(LoanClosed):
            self.coordinator.repay(loan_id, ALICE, "8.4")

    def test_unconfirmed_submission_keeps_loan_busy_until_ttl(self) -> None:
        now = [0.0]
        self.coordinator.guard = InFlightGuard(ttl=30, clock=lambda: now[0])
        loan_id = self._borrow()
        self.gateway.unconfirmed_submissions = 1
        with self.assertRaises(Indeterminate) as ctx:
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertTrue(ctx.exception.handle_id.startswith("unconfirmed-"))
        self.assertEqual(self.coordinator.store.get(loan_id).status, LoanStatus.ACTIVE)
        with self.assertRaises(Busy):
            self.coordinator.repay(loan_id, ALICE, "8.4")
        self.assertEqual(len(self.coordinator.guard), 1)

        now[0] = 31.0
        self.assertEqual(len(self.coordinator.guard), 0)
        self.assertEqual(self.coordinator.repay(loan_id, ALICE, "8.4")["status"], "repaid")


class CostDivergenceTests(CoordinatorTestCase):
    def _baseline(self) -> int:
        loan_id = self._borrow()
        self.gateway.now = 5
        self.coordinator.pay_interest(loan_id, ALICE, "1")
        return loan_id

    def test_cost_jump_revalidates_against_fresh_state(self) -> None:
        loan_id = self._baseline()
        submitted = len(self.gateway.submissions)
        self.gateway.gas[OperationKind.PAY_INTEREST] = 200_000

        def _repaid_elsewhere(op) -> None:
            self.gateway.loans[loan_id] = replace(self.gateway.loans[loan_id], repaid=True)

        self.gateway.on_estimate = _repaid_elsewhere
        with self.assertRaises(LoanClosed):
            self.coordinator.pay_interest(loan_id, ALICE, "1")
        self.assertEqual(len(self.gateway.submissions), submitted)
        self.assertEqual(len(self.coordinator.guard), 0)

    def test_cost_within_factor_submits_without_revalidation(self) -> None:
        loan_id = self._baseline()
        self.gateway.gas[OperationKind.PAY_INTEREST] = 90_000
        reads = []
        read_loan = self.gateway.read_loan

        def _counting_read(target: int):
            reads.append(target)
            return read_loan(target)

        self.gateway.read_loan = _counting_read
        result = self.coordinator.pay_interest(loan_id, ALICE, "1")
        self.assertEqual(result["loan"]["interestAccrued"], Decimal("2"))
        self.assertEqual(reads.count(loan_id), 1)


if __name__ == "__main__":
    unittest.main()
