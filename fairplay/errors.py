from __future__ import annotations
# fairplay/errors.py
"""
Error taxonomy for the fairplay settlement layer. Errors are lightweight,
serializable and safe to surface over HTTP/logs.

Categories
----------
- TRANSIENT   network timeout, nonce contention; retried with bounded backoff
- REJECTED    policy rejection (balances, consumers, ownership); never retried
- INTEGRITY   commitment verification failure; Fatal, needs manual audit
- RESOLUTION  handle / sequence number undiscoverable; Fatal, needs an operator
- LEDGER      ledger inconsistency detected post-hoc

`user_message()` is what an end user sees: transient errors ask to try again,
rejected errors carry their specific message, Fatal errors collapse into a
generic "under review" without exposing internal state.
"""

import json
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    REJECTED = "rejected"
    INTEGRITY = "integrity"
    RESOLUTION = "resolution"
    LEDGER = "ledger"


UNDER_REVIEW_MESSAGE = "this request is under review"
TRY_AGAIN_MESSAGE = "temporarily unavailable, please try again"


class FairplayError(Exception):
    """Base class for fairplay domain errors."""

    code: str = "FAIRPLAY_ERROR"
    category: ErrorCategory = ErrorCategory.REJECTED
    fatal: bool = False

    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None) -> None:
        self.message = message or self.__class__.__name__
        self.details = dict(details or {})
        super().__init__(self.__str__())

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT

    def user_message(self) -> str:
        if self.fatal:
            return UNDER_REVIEW_MESSAGE
        if self.category is ErrorCategory.TRANSIENT:
            return TRY_AGAIN_MESSAGE
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "fatal": self.fatal,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover - trivial
        if self.details:
            try:
                packed = json.dumps(self.details, sort_keys=True, separators=(",", ":"), default=str)
            except Exception:
                packed = str(self.details)
            return f"{self.code}: {self.message} [{packed}]"
        return f"{self.code}: {self.message}"


# ---- Transient ----


class TransientError(FairplayError):
    code = "FAIRPLAY_TRANSIENT"
    category = ErrorCategory.TRANSIENT


class RpcUnavailable(TransientError):
    """Transport failure or retriable HTTP status from the RPC endpoint."""
    code = "FAIRPLAY_RPC_UNAVAILABLE"


class RpcTimeout(TransientError):
    code = "FAIRPLAY_RPC_TIMEOUT"


class NonceContention(TransientError):
    """Another transaction from the same signer took the nonce first."""
    code = "FAIRPLAY_NONCE_CONTENTION"


class ResponseUnreadable(TransientError):
    """The call was dispatched but its response could not be decoded."""
    code = "FAIRPLAY_RESPONSE_UNREADABLE"


# ---- Rejected by policy ----


class RejectedError(FairplayError):
    code = "FAIRPLAY_REJECTED"
    category = ErrorCategory.REJECTED


class RpcCallError(RejectedError):
    """The node executed the call and returned a JSON-RPC error (revert, bad params)."""
    code = "FAIRPLAY_RPC_CALL_ERROR"

    def __init__(self, message: str = "rpc call failed", *, rpc_code: Optional[int] = None,
                 data: Any = None, details: Optional[Mapping[str, Any]] = None) -> None:
        d = dict(details or {})
        if rpc_code is not None:
            d.setdefault("rpc_code", int(rpc_code))
        if data is not None:
            d.setdefault("data", data)
        self.rpc_code = rpc_code
        super().__init__(message, details=d)


class InvalidAmount(RejectedError):
    code = "FAIRPLAY_INVALID_AMOUNT"

    def __init__(self, *, amount: int, message: str = "amount must be greater than zero",
                 details: Optional[Mapping[str, Any]] = None) -> None:
        d = dict(details or {})
        d["amount"] = int(amount)
        super().__init__(message, details=d)


class DepositOutOfRange(RejectedError):
    code = "FAIRPLAY_DEPOSIT_OUT_OF_RANGE"

    def __init__(self, *, amount: int, minimum: int, maximum: int,
                 message: str = "deposit amount outside allowed range") -> None:
        super().__init__(message, details={"amount": int(amount), "minimum": int(minimum), "maximum": int(maximum)})


class _Shortfall(RejectedError):
    """Common shape for balance shortfalls: required vs available."""

    default_message = "insufficient balance"

    def __init__(self, *, required: int, available: int, message: str = "",
                 details: Optional[Mapping[str, Any]] = None) -> None:
        d = dict(details or {})
        d.update({"required": int(required), "available": int(available)})
        super().__init__(message or self.default_message, details=d)


class InsufficientCallerBalance(_Shortfall):
    code = "FAIRPLAY_INSUFFICIENT_CALLER_BALANCE"
    default_message = "caller balance cannot cover the funding amount"


class InsufficientResourceBalance(_Shortfall):
    code = "FAIRPLAY_INSUFFICIENT_RESOURCE_BALANCE"
    default_message = "subscription balance cannot cover the request fee"


class InsufficientAccountBalance(_Shortfall):
    code = "FAIRPLAY_INSUFFICIENT_ACCOUNT_BALANCE"
    default_message = "insufficient account balance"


class InsufficientTreasuryFunds(_Shortfall):
    code = "FAIRPLAY_INSUFFICIENT_TREASURY_FUNDS"
    default_message = "insufficient treasury funds"


class ConsumerNotRegistered(RejectedError):
    code = "FAIRPLAY_CONSUMER_NOT_REGISTERED"

    def __init__(self, *, handle: int, consumer: str, message: str = "caller is not a registered consumer") -> None:
        super().__init__(message, details={"handle": int(handle), "consumer": consumer})


class NotResourceOwner(RejectedError):
    """Ownership mismatch on a subscription; never retried and escalated as Fatal."""
    code = "FAIRPLAY_NOT_RESOURCE_OWNER"
    fatal = True

    def __init__(self, *, handle: int, caller: str, owner: str, message: str = "caller is not the subscription owner") -> None:
        super().__init__(message, details={"handle": int(handle), "caller": caller, "owner": owner})


class UnknownResource(RejectedError):
    code = "FAIRPLAY_UNKNOWN_RESOURCE"

    def __init__(self, *, handle: int, message: str = "unknown subscription") -> None:
        super().__init__(message, details={"handle": int(handle)})


class RequestNotFound(RejectedError):
    code = "FAIRPLAY_REQUEST_NOT_FOUND"

    def __init__(self, message: str = "randomness request not found", **key: Any) -> None:
        super().__init__(message, details=key)


class EntryNotFound(RejectedError):
    code = "FAIRPLAY_ENTRY_NOT_FOUND"

    def __init__(self, *, entry_id: str, message: str = "treasury entry not found") -> None:
        super().__init__(message, details={"entry_id": entry_id})


class InvalidTransition(RejectedError):
    """A state machine was asked to make a move its current state does not allow."""
    code = "FAIRPLAY_INVALID_TRANSITION"

    def __init__(self, *, subject: str, current: str, target: str, message: str = "invalid state transition") -> None:
        super().__init__(message, details={"subject": subject, "current": current, "target": target})


class ConfigError(RejectedError, ValueError):
    code = "FAIRPLAY_CONFIG_ERROR"


# ---- Fatal ----


class IntegrityError(FairplayError):
    code = "FAIRPLAY_INTEGRITY"
    category = ErrorCategory.INTEGRITY
    fatal = True


class CommitmentMismatch(IntegrityError):
    """A revealed seed does not hash to the commitment stored before submission."""
    code = "FAIRPLAY_COMMITMENT_MISMATCH"


class ResolutionError(FairplayError):
    code = "FAIRPLAY_RESOLUTION"
    category = ErrorCategory.RESOLUTION
    fatal = True


class HandleResolutionError(ResolutionError):
    code = "FAIRPLAY_HANDLE_UNRESOLVED"


class SequenceResolutionError(ResolutionError):
    code = "FAIRPLAY_SEQUENCE_UNRESOLVED"


class LedgerInconsistency(FairplayError):
    code = "FAIRPLAY_LEDGER_INCONSISTENCY"
    category = ErrorCategory.LEDGER
    fatal = True


__all__ = [
    "ErrorCategory",
    "UNDER_REVIEW_MESSAGE",
    "TRY_AGAIN_MESSAGE",
    "FairplayError",
    "TransientError",
    "RpcUnavailable",
    "RpcTimeout",
    "NonceContention",
    "ResponseUnreadable",
    "RejectedError",
    "RpcCallError",
    "InvalidAmount",
    "DepositOutOfRange",
    "InsufficientCallerBalance",
    "InsufficientResourceBalance",
    "InsufficientAccountBalance",
    "InsufficientTreasuryFunds",
    "ConsumerNotRegistered",
    "NotResourceOwner",
    "UnknownResource",
    "RequestNotFound",
    "EntryNotFound",
    "InvalidTransition",
    "ConfigError",
    "IntegrityError",
    "CommitmentMismatch",
    "ResolutionError",
    "HandleResolutionError",
    "SequenceResolutionError",
    "LedgerInconsistency",
]
