"""
Tagged result variants for loosely-typed provider/chain call results.

    Result = Ok(value) | NotFound(reason) | Error(kind, message)

Callers branch with isinstance checks (or the `is_ok` helper) instead of
probing for None/empty values:

    res = resolver.resolve_from_event_log(receipt)
    if isinstance(res, Ok):
        handle = res.value
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class NotFound:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Error:
    kind: str
    message: str = ""
    exc: Optional[BaseException] = None

    @classmethod
    def from_exception(cls, exc: BaseException, kind: Optional[str] = None) -> "Error":
        return cls(kind=kind or getattr(exc, "code", type(exc).__name__), message=str(exc), exc=exc)


Result = Union[Ok[T], NotFound, Error]


def is_ok(res: "Result[T]") -> bool:
    return isinstance(res, Ok)


def describe(res: "Result[T]") -> str:
    """Short label for logs and metrics: ok / not_found / error."""
    if isinstance(res, Ok):
        return "ok"
    if isinstance(res, NotFound):
        return "not_found"
    return "error"


__all__ = ["Ok", "NotFound", "Error", "Result", "is_ok", "describe"]
