"""Process configuration read from the environment at start-up."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


def _env_decimal(env: Mapping[str, str], key: str, default: Optional[str]) -> Optional[Decimal]:
    raw = env.get(key) or default
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a decimal amount, got {raw!r}") from exc


@dataclass(frozen=True)
class CoordinatorConfig:
    rpc_url: Optional[str] = None
    operator_key: Optional[str] = None
    contract_address: Optional[str] = None
    lending_abi_path: Optional[str] = None
    registry_path: Optional[str] = None
    loan_duration: int = 30 * 86400
    interest_period: int = 7 * 86400
    min_value_unit: Decimal = Decimal("0.000000000000000001")
    web3_timeout: int = 15
    finality_timeout: float = 60.0
    finality_poll_interval: float = 2.0
    finality_max_wait: float = 600.0
    inflight_ttl: float = 600.0
    ledger_retries: int = 3
    ledger_retry_base: float = 0.5
    max_operation_fee: Optional[Decimal] = None
    cost_divergence_factor: float = 2.0
    api_key: Optional[str] = None
    rate_limit: int = 120
    rate_limit_window: int = 60
    port: int = 3001
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.loan_duration <= 0:
            raise ValueError("LOAN_DURATION must be greater than zero")
        if self.interest_period <= 0:
            raise ValueError("INTEREST_PERIOD must be greater than zero")
        if self.min_value_unit <= 0:
            raise ValueError("MIN_VALUE_UNIT must be positive")
        if self.ledger_retries < 1:
            raise ValueError("LEDGER_RETRIES must be at least 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "CoordinatorConfig":
        env = os.environ if env is None else env
        return cls(
            rpc_url=env.get("LEDGER_RPC_URL") or None,
            operator_key=env.get("OPERATOR_KEY") or None,
            contract_address=env.get("CONTRACT_ADDRESS") or None,
            lending_abi_path=env.get("LENDING_ABI") or None,
            registry_path=env.get("COLLATERAL_REGISTRY") or None,
            loan_duration=_env_int(env, "LOAN_DURATION", 30 * 86400),
            interest_period=_env_int(env, "INTEREST_PERIOD", 7 * 86400),
            min_value_unit=_env_decimal(env, "MIN_VALUE_UNIT", "0.000000000000000001"),
            web3_timeout=_env_int(env, "WEB3_TIMEOUT", 15),
            finality_timeout=_env_float(env, "FINALITY_TIMEOUT", 60.0),
            finality_poll_interval=_env_float(env, "FINALITY_POLL_INTERVAL", 2.0),
            finality_max_wait=_env_float(env, "FINALITY_MAX_WAIT", 600.0),
            inflight_ttl=_env_float(env, "INFLIGHT_TTL", 600.0),
            ledger_retries=_env_int(env, "LEDGER_RETRIES", 3),
            ledger_retry_base=_env_float(env, "LEDGER_RETRY_BASE", 0.5),
            max_operation_fee=_env_decimal(env, "MAX_OPERATION_FEE", None),
            cost_divergence_factor=_env_float(env, "COST_DIVERGENCE_FACTOR", 2.0),
            api_key=env.get("API_KEY") or None,
            rate_limit=_env_int(env, "RATE_LIMIT", 120),
            rate_limit_window=_env_int(env, "RATE_LIMIT_WINDOW", 60),
            port=_env_int(env, "PORT", 3001),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )


__all__ = ["CoordinatorConfig"]
