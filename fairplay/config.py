"""
Fairplay configuration.

A single explicit, validated configuration object is passed to each component
at construction time; nothing reads the environment implicitly after load.

It provides:
- a dataclass with `validate()`
- loading from environment variables (prefix configurable)
- loading from a JSON or YAML file
- `to_dict()` / `to_json()` with the treasury key redacted
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml

from .constants import (
    DEFAULT_FULFILLMENT_TIMEOUT_S,
    DEFAULT_LOG_WINDOW_BLOCKS,
    DEFAULT_MAX_DEPOSIT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_DEPOSIT,
    DEFAULT_RECEIPT_POLL_INTERVAL_S,
    DEFAULT_RETRY_BASE_DELAY_S,
    DEFAULT_RPC_TIMEOUT_S,
    DEFAULT_SCAN_UPPER_BOUND,
    DEFAULT_SWEEP_INTERVAL_S,
    DEFAULT_WITHDRAW_GAS_LIMIT,
    FEE_CURRENCIES,
    SCAN_HARD_CAP,
)
from .errors import ConfigError

_ADDR_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_REDACTED = "***"


def is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDR_RE.match(value or ""))


@dataclass
class FairplayConfig:
    """
    Chain endpoints:
      - rpc_url: JSON-RPC endpoint of the chain
      - chain_id: numeric chain id (used for tx signing and explorer routing)

    Contracts / accounts:
      - provider_address: randomness provider's subscription registry
      - consumer_address: consuming contract that submits randomness requests
      - treasury_address: custodial treasury account
      - treasury_key: treasury signing key material (hex, never logged)
      - fee_currency: "native" or "token"; token requires fee_token_address

    Bounds / timing:
      - scan_upper_bound: hard limit on handles probed by the ownership scan
      - fulfillment_timeout_s: AwaitingFulfillment requests older than this expire
      - rpc_timeout_s: per external call timeout
      - max_retries / retry_base_delay_s: transient retry budget
      - sweep_interval_s: expiry sweep cadence
      - log_window_blocks: block window searched by log-based sequence resolution
    """

    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 1

    provider_address: str = ""
    consumer_address: str = ""
    treasury_address: str = ""
    treasury_key: str = field(default="", repr=False)
    fee_currency: str = "native"
    fee_token_address: Optional[str] = None

    scan_upper_bound: int = DEFAULT_SCAN_UPPER_BOUND
    fulfillment_timeout_s: float = DEFAULT_FULFILLMENT_TIMEOUT_S
    rpc_timeout_s: float = DEFAULT_RPC_TIMEOUT_S
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S
    log_window_blocks: int = DEFAULT_LOG_WINDOW_BLOCKS
    receipt_poll_interval_s: float = DEFAULT_RECEIPT_POLL_INTERVAL_S

    min_deposit: int = DEFAULT_MIN_DEPOSIT
    max_deposit: int = DEFAULT_MAX_DEPOSIT
    withdraw_gas_limit: int = DEFAULT_WITHDRAW_GAS_LIMIT

    explorer_url: str = "https://etherscan.io"
    entropy_explorer_url: str = "https://entropy-explorer.pyth.network"
    explorer_chain: str = "ethereum"

    db_path: Optional[str] = None

    def validate(self) -> None:
        u = urlparse(self.rpc_url)
        if u.scheme not in {"http", "https"} or not u.netloc:
            raise ConfigError(f"rpc_url must be an http(s) URL: {self.rpc_url!r}")
        if self.chain_id <= 0:
            raise ConfigError("chain_id must be > 0")
        for name in ("provider_address", "consumer_address", "treasury_address"):
            if not is_address(getattr(self, name)):
                raise ConfigError(f"{name} must be a 0x-prefixed 20-byte hex address")
        if not _KEY_RE.match(self.treasury_key or ""):
            raise ConfigError("treasury_key must be 32 bytes of hex")
        if self.fee_currency not in FEE_CURRENCIES:
            raise ConfigError(f"fee_currency must be one of {FEE_CURRENCIES}")
        if self.fee_currency == "token" and not is_address(self.fee_token_address):
            raise ConfigError("fee_token_address is required when fee_currency is 'token'")
        if not (0 < self.scan_upper_bound <= SCAN_HARD_CAP):
            raise ConfigError(f"scan_upper_bound must be in (0, {SCAN_HARD_CAP}]")
        for name in ("fulfillment_timeout_s", "rpc_timeout_s", "sweep_interval_s", "receipt_poll_interval_s"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.retry_base_delay_s < 0:
            raise ConfigError("retry_base_delay_s must be >= 0")
        if self.log_window_blocks <= 0:
            raise ConfigError("log_window_blocks must be > 0")
        if not (0 < self.min_deposit <= self.max_deposit):
            raise ConfigError("deposit limits must satisfy 0 < min_deposit <= max_deposit")
        if self.withdraw_gas_limit < 21_000:
            raise ConfigError("withdraw_gas_limit must be >= 21000")
        for name in ("explorer_url", "entropy_explorer_url"):
            if urlparse(getattr(self, name)).scheme not in {"http", "https"}:
                raise ConfigError(f"{name} must be an http(s) URL")

    # -------------------------
    # Serialization helpers
    # -------------------------

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("treasury_key"):
            data["treasury_key"] = _REDACTED
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    # -------------------------
    # Loaders
    # -------------------------

    @staticmethod
    def from_env(prefix: str = "FAIRPLAY_") -> "FairplayConfig":
        """
        Load configuration from environment variables. Unset keys keep their
        defaults; the result is validated.

        Supported keys (examples):
          - FAIRPLAY_RPC_URL=https://rpc.example.org
          - FAIRPLAY_CHAIN_ID=8453
          - FAIRPLAY_PROVIDER_ADDRESS=0x…
          - FAIRPLAY_CONSUMER_ADDRESS=0x…
          - FAIRPLAY_TREASURY_ADDRESS=0x…
          - FAIRPLAY_TREASURY_KEY=…
          - FAIRPLAY_FEE_CURRENCY=native
          - FAIRPLAY_FEE_TOKEN_ADDRESS=0x…
          - FAIRPLAY_SCAN_UPPER_BOUND=1000
          - FAIRPLAY_FULFILLMENT_TIMEOUT_S=300
          - FAIRPLAY_RPC_TIMEOUT_S=30
          - FAIRPLAY_MAX_RETRIES=3
          - FAIRPLAY_RETRY_BASE_DELAY_S=1.0
          - FAIRPLAY_SWEEP_INTERVAL_S=15
          - FAIRPLAY_LOG_WINDOW_BLOCKS=5000
          - FAIRPLAY_MIN_DEPOSIT=1000000000000000
          - FAIRPLAY_MAX_DEPOSIT=100000000000000000000
          - FAIRPLAY_WITHDRAW_GAS_LIMIT=100000
          - FAIRPLAY_EXPLORER_URL=https://basescan.org
          - FAIRPLAY_ENTROPY_EXPLORER_URL=https://entropy-explorer.pyth.network
          - FAIRPLAY_EXPLORER_CHAIN=base
          - FAIRPLAY_DB_PATH=./data/fairplay.db
        """

        def _get(name: str, cast: Any, default: Any) -> Any:
            key = prefix + name
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except Exception as e:
                raise ConfigError(f"Invalid value for {key}: {raw!r}") from e

        d = FairplayConfig()
        cfg = FairplayConfig(
            rpc_url=_get("RPC_URL", str, d.rpc_url),
            chain_id=_get("CHAIN_ID", int, d.chain_id),
            provider_address=_get("PROVIDER_ADDRESS", str, d.provider_address),
            consumer_address=_get("CONSUMER_ADDRESS", str, d.consumer_address),
            treasury_address=_get("TREASURY_ADDRESS", str, d.treasury_address),
            treasury_key=_get("TREASURY_KEY", str, d.treasury_key),
            fee_currency=_get("FEE_CURRENCY", str, d.fee_currency),
            fee_token_address=_get("FEE_TOKEN_ADDRESS", str, d.fee_token_address),
            scan_upper_bound=_get("SCAN_UPPER_BOUND", int, d.scan_upper_bound),
            fulfillment_timeout_s=_get("FULFILLMENT_TIMEOUT_S", float, d.fulfillment_timeout_s),
            rpc_timeout_s=_get("RPC_TIMEOUT_S", float, d.rpc_timeout_s),
            max_retries=_get("MAX_RETRIES", int, d.max_retries),
            retry_base_delay_s=_get("RETRY_BASE_DELAY_S", float, d.retry_base_delay_s),
            sweep_interval_s=_get("SWEEP_INTERVAL_S", float, d.sweep_interval_s),
            log_window_blocks=_get("LOG_WINDOW_BLOCKS", int, d.log_window_blocks),
            receipt_poll_interval_s=_get("RECEIPT_POLL_INTERVAL_S", float, d.receipt_poll_interval_s),
            min_deposit=_get("MIN_DEPOSIT", int, d.min_deposit),
            max_deposit=_get("MAX_DEPOSIT", int, d.max_deposit),
            withdraw_gas_limit=_get("WITHDRAW_GAS_LIMIT", int, d.withdraw_gas_limit),
            explorer_url=_get("EXPLORER_URL", str, d.explorer_url),
            entropy_explorer_url=_get("ENTROPY_EXPLORER_URL", str, d.entropy_explorer_url),
            explorer_chain=_get("EXPLORER_CHAIN", str, d.explorer_chain),
            db_path=_get("DB_PATH", str, d.db_path),
        )
        cfg.validate()
        return cfg

    @staticmethod
    def from_file(path: str) -> "FairplayConfig":
        """
        Load configuration from a JSON or YAML file. Keys mirror the dataclass
        fields; unknown keys are rejected. Example (YAML):

            rpc_url: https://rpc.example.org
            chain_id: 8453
            provider_address: "0x…"
            consumer_address: "0x…"
            treasury_address: "0x…"
            treasury_key: "…"
            scan_upper_bound: 1000
            fulfillment_timeout_s: 300
        """
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()

        if path.endswith((".yaml", ".yml")):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        return FairplayConfig.from_dict(data)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FairplayConfig":
        known = {f.name for f in fields(FairplayConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
        cfg = FairplayConfig(**data)
        cfg.validate()
        return cfg


__all__ = ["FairplayConfig", "is_address"]
