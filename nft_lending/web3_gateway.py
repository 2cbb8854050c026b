"""Ledger Gateway backed by an EVM node through web3.py."""
from __future__ import annotations

import itertools
import json
import logging
import time
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from urllib3.exceptions import NewConnectionError
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from .config import CoordinatorConfig
from .ledger import (
    Asset,
    CostEstimate,
    FinalityOutcome,
    FinalityState,
    FinalityTracker,
    LedgerGateway,
    LedgerOperation,
    LoanRecord,
    NETWORK_ERRORS,
    OperationKind,
    PendingHandle,
    UNCONFIRMED_SUBMISSION,
    with_retries,
)

LOGGER = logging.getLogger("nft-lending.web3")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Business-level refusals raised by the node; these never count as network failures.
NODE_REJECTIONS = (ContractLogicError, Web3RPCError, ValueError)

FUNCTION_NAMES: Dict[OperationKind, str] = {
    OperationKind.BORROW: "collateralizeNFT",
    OperationKind.REPAY: "repayLoan",
    OperationKind.PAY_INTEREST: "payInterest",
    OperationKind.CHECK_DEFAULT: "checkDefault",
    OperationKind.WITHDRAW: "withdraw",
}


def _fn(name: str, inputs: List[Dict[str, str]], outputs: List[Dict[str, str]], mutability: str) -> Dict[str, Any]:
    return {"name": name, "type": "function", "inputs": inputs, "outputs": outputs, "stateMutability": mutability}


LENDING_ABI: List[Dict[str, Any]] = [
    _fn(
        "collateralizeNFT",
        [{"name": "nftAddress", "type": "address"}, {"name": "tokenId", "type": "uint256"}],
        [],
        "nonpayable",
    ),
    _fn("repayLoan", [{"name": "loanId", "type": "uint256"}], [], "payable"),
    _fn("payInterest", [{"name": "loanId", "type": "uint256"}], [], "payable"),
    _fn("checkDefault", [{"name": "loanId", "type": "uint256"}], [], "nonpayable"),
    _fn("withdraw", [], [], "nonpayable"),
    _fn("owner", [], [{"name": "", "type": "address"}], "view"),
    _fn(
        "loans",
        [{"name": "", "type": "uint256"}],
        [
            {"name": "borrower", "type": "address"},
            {"name": "nftAddress", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
            {"name": "loanAmount", "type": "uint256"},
            {"name": "repaymentAmount", "type": "uint256"},
            {"name": "interestPaid", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
            {"name": "lastInterestPaidTime", "type": "uint256"},
            {"name": "repaid", "type": "bool"},
            {"name": "defaulted", "type": "bool"},
        ],
        "view",
    ),
    _fn("loansOf", [{"name": "borrower", "type": "address"}], [{"name": "", "type": "uint256[]"}], "view"),
    _fn(
        "collateralValue",
        [{"name": "nftAddress", "type": "address"}, {"name": "tokenId", "type": "uint256"}],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
    {
        "name": "LoanCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "loanId", "type": "uint256", "indexed": True},
            {"name": "borrower", "type": "address", "indexed": True},
            {"name": "nftAddress", "type": "address", "indexed": False},
            {"name": "tokenId", "type": "uint256", "indexed": False},
            {"name": "loanAmount", "type": "uint256", "indexed": False},
            {"name": "repaymentAmount", "type": "uint256", "indexed": False},
        ],
    },
]

ERC721_ABI: List[Dict[str, Any]] = [
    _fn("balanceOf", [{"name": "owner", "type": "address"}], [{"name": "", "type": "uint256"}], "view"),
    _fn(
        "tokenOfOwnerByIndex",
        [{"name": "owner", "type": "address"}, {"name": "index", "type": "uint256"}],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
    _fn("tokenURI", [{"name": "tokenId", "type": "uint256"}], [{"name": "", "type": "string"}], "view"),
    _fn("ownerOf", [{"name": "tokenId", "type": "uint256"}], [{"name": "", "type": "address"}], "view"),
]

RECEIPT_EVENTS = ("LoanCreated",)


def _load_abi(path: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    """Load a contract ABI from disk; accepts bare ABIs and build artifacts."""
    if not path:
        return None
    candidate = Path(path)
    if not candidate.exists():
        LOGGER.warning("ABI file missing at %s, using built-in lending ABI", candidate)
        return None
    with candidate.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        return payload.get("abi") or []
    return payload


def _init_web3(url: Optional[str], timeout: int) -> Web3:
    if not url:
        raise ValueError("LEDGER_RPC_URL is required for the web3 ledger gateway")
    web3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
    try:
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    except ValueError:  # pragma: no cover - already injected
        pass
    return web3


def _from_wei(amount: int) -> Decimal:
    return Decimal(Web3.from_wei(int(amount), "ether"))


def _to_wei(amount: Decimal) -> int:
    return int(Web3.to_wei(Decimal(amount), "ether"))


def _node_reason(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        message = exc.args[0].get("message") or message
    message = str(message).strip()
    for prefix in ("execution reverted: ", "execution reverted"):
        if message.startswith(prefix):
            message = message[len(prefix):].strip()
    return message or "reverted"


class _UnconfirmedSend(Exception):
    """A send failed after the request may have reached the node."""

    def __init__(self, nonce: int, cause: BaseException) -> None:
        super().__init__(f"nonce {nonce}: {cause}")
        self.nonce = nonce
        self.cause = cause


def _never_sent(exc: BaseException) -> bool:
    """True when the request provably never left this process."""
    if isinstance(exc, (requests.exceptions.ConnectTimeout, ConnectionRefusedError)):
        return True
    if isinstance(exc, requests.exceptions.ConnectionError) and exc.args:
        return isinstance(getattr(exc.args[0], "reason", None), NewConnectionError)
    return False


class Web3LedgerGateway(LedgerGateway):
    """Drives the lending contract; one instance per process."""

    def __init__(
        self,
        config: CoordinatorConfig,
        *,
        web3: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
        tracker: Optional[FinalityTracker] = None,
    ) -> None:
        if not config.contract_address:
            raise ValueError("CONTRACT_ADDRESS is required for the web3 ledger gateway")
        self.config = config
        self.web3 = web3 if web3 is not None else _init_web3(config.rpc_url, config.web3_timeout)
        self.abi = _load_abi(config.lending_abi_path) or LENDING_ABI
        self.contract_address = to_checksum_address(config.contract_address)
        self.contract = self.web3.eth.contract(address=self.contract_address, abi=self.abi)
        self.operator: Optional[LocalAccount] = Account.from_key(config.operator_key) if config.operator_key else None
        self._sleep = sleep
        self._collections: Dict[str, Any] = {}
        self.tracker = tracker or FinalityTracker(
            self._poll,
            interval=config.finality_poll_interval,
            max_wait=config.finality_max_wait,
        )

    # ----------------------------------------------------------------- helpers

    def _retry(self, description: str, call: Callable[[], Any]) -> Any:
        return with_retries(
            call,
            description=description,
            attempts=self.config.ledger_retries,
            base_delay=self.config.ledger_retry_base,
            sleep=self._sleep,
        )

    def _function(self, op: LedgerOperation) -> Any:
        return getattr(self.contract.functions, FUNCTION_NAMES[op.kind])(*op.args)

    def _tx_params(self, op: LedgerOperation) -> Dict[str, Any]:
        return {"from": to_checksum_address(op.sender), "value": _to_wei(op.value)}

    def _collection(self, collection_id: str) -> Any:
        checksum = to_checksum_address(collection_id)
        contract = self._collections.get(checksum)
        if contract is None:
            contract = self.web3.eth.contract(address=checksum, abi=ERC721_ABI)
            self._collections[checksum] = contract
        return contract

    def _decode_events(self, receipt: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        decoded: Dict[str, Dict[str, Any]] = {}
        for event_name in RECEIPT_EVENTS:
            event_abi = getattr(self.contract.events, event_name, None)
            if event_abi is None:
                continue
            logs = list(event_abi().process_receipt(receipt, errors=DISCARD))
            if logs:
                decoded[event_name] = dict(logs[0]["args"])
        return decoded

    def _revert_reason(self, op: LedgerOperation, block_number: int) -> str:
        try:
            self._function(op).call(self._tx_params(op), block_identifier=block_number)
        except NODE_REJECTIONS as exc:
            return _node_reason(exc)
        return "reverted"

    def _poll(self, handle: PendingHandle) -> Optional[FinalityOutcome]:
        tx_hash = HexBytes(handle.handle_id)
        try:
            receipt = self._retry("receipt lookup", lambda: self.web3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        block_number = int(receipt["blockNumber"])
        block = self._retry("block lookup", lambda: self.web3.eth.get_block(block_number))
        fee = _from_wei(int(receipt["gasUsed"]) * int(receipt.get("effectiveGasPrice") or 0))
        outcome = FinalityOutcome(
            state=FinalityState.CONFIRMED,
            handle_id=handle.handle_id,
            block_number=block_number,
            timestamp=int(block["timestamp"]),
            fee=fee,
        )
        if int(receipt["status"]) == 1:
            outcome.events = self._decode_events(receipt)
            LOGGER.info("Operation %s confirmed in block %s", handle.handle_id, block_number)
        else:
            outcome.state = FinalityState.REVERTED
            outcome.reason = self._revert_reason(handle.operation, block_number)
            LOGGER.warning("Operation %s reverted in block %s: %s", handle.handle_id, block_number, outcome.reason)
        return outcome

    # ------------------------------------------------------------- operations

    def estimate_cost(self, op: LedgerOperation) -> CostEstimate:
        contract_fn = self._function(op)
        params = self._tx_params(op)
        gas_price = int(self._retry("gas price lookup", lambda: self.web3.eth.gas_price))
        try:
            gas = int(self._retry(f"{op.kind.value} gas estimation", lambda: contract_fn.estimate_gas(params)))
        except NODE_REJECTIONS as exc:
            reason = _node_reason(exc)
            LOGGER.info("%s by %s would revert: %s", op.kind.value, op.sender, reason)
            return CostEstimate(gas=0, gas_price=gas_price, fee=Decimal(0), revert_reason=reason)
        return CostEstimate(gas=gas, gas_price=gas_price, fee=_from_wei(gas * gas_price))

    def _signed_sender(self, contract_fn: Any, params: Dict[str, Any], signer: LocalAccount) -> Callable[[], Any]:
        nonce = self._retry("nonce lookup", lambda: self.web3.eth.get_transaction_count(signer.address, "pending"))
        chain_id = self._retry("chain id lookup", lambda: self.web3.eth.chain_id)
        built = self._retry(
            "transaction build",
            lambda: contract_fn.build_transaction({**params, "nonce": nonce, "chainId": chain_id}),
        )
        signed = signer.sign_transaction(built)
        attempts = itertools.count(1)

        def _send() -> Any:
            attempt = next(attempts)
            try:
                return self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except NODE_REJECTIONS as exc:
                reason = _node_reason(exc)
                # a resend of the same signed bytes; the first attempt reached the node
                if "already known" in reason or (attempt > 1 and "nonce too low" in reason):
                    return signed.hash
                raise

        return _send

    def _unsigned_sender(self, contract_fn: Any, params: Dict[str, Any]) -> Callable[[], Any]:
        nonce = self._retry("nonce lookup", lambda: self.web3.eth.get_transaction_count(params["from"], "pending"))
        pinned = {**params, "nonce": nonce}

        def _send() -> Any:
            try:
                return contract_fn.transact(pinned)
            except NETWORK_ERRORS as exc:
                if _never_sent(exc):
                    raise
                raise _UnconfirmedSend(nonce, exc) from exc

        return _send

    def submit(self, op: LedgerOperation, signer: Optional[LocalAccount] = None) -> PendingHandle:
        contract_fn = self._function(op)
        params = self._tx_params(op)
        try:
            if signer is not None:
                send = self._signed_sender(contract_fn, params, signer)
            else:
                send = self._unsigned_sender(contract_fn, params)
            tx_hash = self._retry(f"{op.kind.value} submission", send)
        except NODE_REJECTIONS as exc:
            reason = _node_reason(exc)
            handle = PendingHandle(f"rejected-{uuid.uuid4().hex}", op)
            handle.resolve(FinalityOutcome(state=FinalityState.REVERTED, handle_id=handle.handle_id, reason=reason))
            LOGGER.warning("Node refused %s by %s: %s", op.kind.value, op.sender, reason)
            return self.tracker.track(handle)
        except _UnconfirmedSend as exc:
            handle = PendingHandle(f"unconfirmed-{uuid.uuid4().hex}", op)
            handle.resolve(
                FinalityOutcome(state=FinalityState.PENDING, handle_id=handle.handle_id, reason=UNCONFIRMED_SUBMISSION)
            )
            LOGGER.error(
                "%s by %s with nonce %s may have been sent (%s); not resending",
                op.kind.value,
                op.sender,
                exc.nonce,
                exc.cause,
            )
            return self.tracker.track(handle)
        handle = PendingHandle(Web3.to_hex(HexBytes(tx_hash)), op)
        LOGGER.info("Submitted %s by %s as %s", op.kind.value, op.sender, handle.handle_id)
        return self.tracker.track(handle)

    def handle(self, handle_id: str) -> Optional[PendingHandle]:
        return self.tracker.get(handle_id)

    def read_loan(self, loan_id: int) -> Optional[LoanRecord]:
        raw = self._retry("loan lookup", lambda: self.contract.functions.loans(int(loan_id)).call())
        borrower = raw[0]
        if not borrower or int(borrower, 16) == 0:
            return None
        return LoanRecord(
            loan_id=int(loan_id),
            borrower=to_checksum_address(borrower),
            collection_id=to_checksum_address(raw[1]),
            token_id=int(raw[2]),
            advance_amount=_from_wei(raw[3]),
            repayment_amount=_from_wei(raw[4]),
            interest_paid=_from_wei(raw[5]),
            start_time=int(raw[6]),
            last_interest_paid_time=int(raw[7]),
            repaid=bool(raw[8]),
            defaulted=bool(raw[9]),
        )

    def loans_of(self, borrower: str) -> List[int]:
        checksum = to_checksum_address(borrower)
        ids: Iterable[int] = self._retry("borrower loans lookup", lambda: self.contract.functions.loansOf(checksum).call())
        return [int(loan_id) for loan_id in ids]

    def _declared_value(self, collection_id: str, token_id: int) -> Decimal:
        checksum = to_checksum_address(collection_id)
        raw = self._retry(
            "collateral valuation",
            lambda: self.contract.functions.collateralValue(checksum, int(token_id)).call(),
        )
        return _from_wei(raw)

    def read_asset(self, collection_id: str, token_id: int) -> Asset:
        collection = self._collection(collection_id)
        owner = self._retry("owner lookup", lambda: collection.functions.ownerOf(int(token_id)).call())
        token_uri = self._retry("token uri lookup", lambda: collection.functions.tokenURI(int(token_id)).call())
        return Asset(
            collection_id=to_checksum_address(collection_id),
            token_id=int(token_id),
            owner_address=to_checksum_address(owner),
            declared_value=self._declared_value(collection_id, token_id),
            token_uri=token_uri or "",
        )

    def assets_of(self, owner: str, collection_id: str) -> List[Asset]:
        collection = self._collection(collection_id)
        checksum_owner = to_checksum_address(owner)
        balance = int(self._retry("balance lookup", lambda: collection.functions.balanceOf(checksum_owner).call()))
        assets: List[Asset] = []
        for index in range(balance):
            token_id = int(
                self._retry(
                    "token index lookup",
                    lambda: collection.functions.tokenOfOwnerByIndex(checksum_owner, index).call(),
                )
            )
            token_uri = self._retry("token uri lookup", lambda: collection.functions.tokenURI(token_id).call())
            assets.append(
                Asset(
                    collection_id=to_checksum_address(collection_id),
                    token_id=token_id,
                    owner_address=checksum_owner,
                    declared_value=self._declared_value(collection_id, token_id),
                    token_uri=token_uri or "",
                )
            )
        return assets

    def contract_owner(self) -> str:
        owner = self._retry("contract owner lookup", lambda: self.contract.functions.owner().call())
        return to_checksum_address(owner or ZERO_ADDRESS)

    def balance_of(self, address: str) -> Decimal:
        checksum = to_checksum_address(address)
        return _from_wei(self._retry("account balance lookup", lambda: self.web3.eth.get_balance(checksum)))

    def latest_timestamp(self) -> int:
        block = self._retry("latest block lookup", lambda: self.web3.eth.get_block("latest"))
        return int(block["timestamp"])

    def signer_for(self, address: str) -> Optional[LocalAccount]:
        if self.operator and self.operator.address.lower() == str(address or "").lower():
            return self.operator
        return None

    def start(self) -> None:
        if not self.tracker.is_alive():
            self.tracker.start()

    def close(self) -> None:
        self.tracker.stop()
        if self.tracker.is_alive():
            self.tracker.join(timeout=5)


__all__ = ["ERC721_ABI", "LENDING_ABI", "Web3LedgerGateway"]
