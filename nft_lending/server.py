"""HTTP gateway for the NFT lending coordinator."""
from __future__ import annotations

import hmac
import json
import logging
import threading
import time
import urllib.parse
from collections import deque
from decimal import Decimal
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Deque, Dict, Optional, Tuple

from .config import CoordinatorConfig
from .coordinator import LendingCoordinator
from .errors import InvalidRequest, LendingError
from .ledger import LedgerGateway
from .registry import EligibilityRegistry
from .web3_gateway import Web3LedgerGateway

LOGGER = logging.getLogger("nft-lending.server")


class RateLimiter:
    """IP-based sliding window limiter."""

    def __init__(self, limit: int = 120, window: int = 60) -> None:
        self.limit = limit
        self.window = window
        self._records: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            bucket = self._records.setdefault(key, deque())
            while bucket and now - bucket[0] > self.window:
                bucket.popleft()
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        # amounts travel as strings to keep full precision
        return format(value.normalize(), "f") if value else "0"
    if hasattr(value, "to_dict"):
        return value.to_dict()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class CoordinatorHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        address: Tuple[str, int],
        coordinator: LendingCoordinator,
        config: CoordinatorConfig,
        handler: Optional[type] = None,
    ) -> None:
        super().__init__(address, handler or Handler)
        self.coordinator = coordinator
        self.config = config
        self.rate_limiter = RateLimiter(config.rate_limit, config.rate_limit_window)


class Handler(BaseHTTPRequestHandler):
    server_version = "NFTLending/1.0"
    server: CoordinatorHTTPServer

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - logging override
        LOGGER.info("%s - %s", self.address_string(), format % args)

    @property
    def coordinator(self) -> LendingCoordinator:
        return self.server.coordinator

    def _json(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=_encode).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _error(self, exc: LendingError) -> None:
        if exc.status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            LOGGER.error("%s %s failed: %s", self.command, self.path, exc.message)
        else:
            LOGGER.info("%s %s -> %s: %s", self.command, self.path, exc.code, exc.message)
        self._json(exc.status, exc.to_dict())

    def _read_json(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b"{}"
        try:
            payload = json.loads(raw or b"{}")
        except json.JSONDecodeError as exc:
            raise InvalidRequest("request body is not valid JSON", {"error": str(exc)})
        if not isinstance(payload, dict):
            raise InvalidRequest("request body must be a JSON object")
        return payload

    def _ensure_authorized(self) -> bool:
        api_key = self.server.config.api_key
        if not api_key:
            return True
        provided = self.headers.get("X-API-Key", "")
        if not provided or not hmac.compare_digest(api_key, provided):
            self._json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized", "message": "missing or invalid API key"})
            return False
        return True

    def _rate_limit(self) -> bool:
        limiter = self.server.rate_limiter
        if not limiter.allow(self.client_address[0]):
            self._json(HTTPStatus.TOO_MANY_REQUESTS, {"error": "rate-limit", "retryIn": limiter.window})
            return False
        return True

    def do_OPTIONS(self) -> None:  # noqa: N802 - preflight support
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_header("Access-Control-Allow-Headers", "Content-Type,X-API-Key")
        self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
        self.end_headers()

    def end_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        super().end_headers()

    def do_GET(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path == "/health":
            self._json(HTTPStatus.OK, {"ok": True, "version": self.server_version})
            return
        if not self._rate_limit() or not self._ensure_authorized():
            return
        parts = [part for part in parsed.path.split("/") if part]
        try:
            if parts == ["metrics"]:
                self._json(HTTPStatus.OK, {"data": self.coordinator.metrics()})
                return
            if len(parts) == 2 and parts[0] == "collateral":
                self._json(HTTPStatus.OK, {"data": self.coordinator.collateral_options(parts[1])})
                return
            if parts == ["loans"]:
                query = urllib.parse.parse_qs(parsed.query)
                borrower = query.get("borrower", [""])[0]
                if not borrower:
                    raise InvalidRequest("borrower query parameter is required")
                loans = self.coordinator.loans(borrower)
                self._json(HTTPStatus.OK, {"data": [loan.to_dict() for loan in loans]})
                return
            if len(parts) == 2 and parts[0] == "loans":
                self._json(HTTPStatus.OK, {"data": self.coordinator.loan(parts[1]).to_dict()})
                return
            if len(parts) == 3 and parts[0] == "loans" and parts[2] == "history":
                self._json(HTTPStatus.OK, {"data": self.coordinator.history(parts[1])})
                return
            if len(parts) == 2 and parts[0] == "operations":
                self._json(HTTPStatus.OK, {"data": self.coordinator.operation_status(parts[1])})
                return
        except LendingError as exc:
            self._error(exc)
            return
        self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        if not self._rate_limit() or not self._ensure_authorized():
            return
        try:
            payload = self._read_json()
            if parsed.path == "/borrow":
                result = self.coordinator.borrow(payload["collectionId"], payload["tokenId"], payload["actorAddress"])
                self._json(HTTPStatus.CREATED, {"data": result})
                return
            if parsed.path == "/repay":
                result = self.coordinator.repay(payload["loanId"], payload["actorAddress"], payload["suppliedValue"])
                self._json(HTTPStatus.OK, {"data": result})
                return
            if parsed.path == "/interest":
                result = self.coordinator.pay_interest(
                    payload["loanId"], payload["actorAddress"], payload["suppliedValue"]
                )
                self._json(HTTPStatus.OK, {"data": result})
                return
            if parsed.path == "/check-default":
                result = self.coordinator.check_default(payload["loanId"], payload["actorAddress"])
                self._json(HTTPStatus.OK, {"data": result})
                return
            if parsed.path == "/withdraw":
                result = self.coordinator.withdraw(payload["actorAddress"])
                self._json(HTTPStatus.OK, {"data": result})
                return
        except KeyError as exc:
            self._json(HTTPStatus.BAD_REQUEST, {"error": "invalid-request", "message": f"missing field {exc.args[0]}"})
            return
        except LendingError as exc:
            self._error(exc)
            return
        self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})


def build_coordinator(config: CoordinatorConfig, gateway: Optional[LedgerGateway] = None) -> LendingCoordinator:
    registry = EligibilityRegistry.from_config(config.registry_path)
    return LendingCoordinator(gateway or Web3LedgerGateway(config), registry, config)


def run(config: Optional[CoordinatorConfig] = None) -> None:
    config = config or CoordinatorConfig.from_env()
    logging.basicConfig(level=config.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    coordinator = build_coordinator(config)
    coordinator.gateway.start()
    server = CoordinatorHTTPServer(("0.0.0.0", config.port), coordinator, config)
    LOGGER.info("NFT lending coordinator listening on http://0.0.0.0:%s", config.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        LOGGER.info("Shutting down due to interrupt")
    finally:
        coordinator.gateway.close()
        server.server_close()


if __name__ == "__main__":
    run()
