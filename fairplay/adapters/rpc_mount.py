"""
fairplay.adapters.rpc_mount
---------------------------

HTTP surface for the settlement layer:

    POST /games/start               → start a game (stake hold + randomness request)
    POST /games/fulfill             → provider fulfillment callback
    GET  /requests/{request_id}     → request state and front-end view
    POST /games/verify              → recompute a fulfilled result
    POST /treasury/deposit          → record a deposit transaction
    POST /treasury/withdraw         → withdraw from the treasury to a wallet
    GET  /treasury/balance          → live treasury balance vs ledger liabilities
    GET  /accounts/{account}/balance
    GET  /history/{account}
    GET  /stats/{account}

Errors are mapped by category: transient → 503 "try again", policy rejection
→ 400 (404 for unknown ids) carrying code and message, Fatal → 500 with a
generic "under review" body and nothing else.

This module is transport glue only; concrete logic lives behind the injected
`SettlementService` interface below.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Protocol, TypeVar

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from ..errors import (
    TRY_AGAIN_MESSAGE,
    UNDER_REVIEW_MESSAGE,
    EntryNotFound,
    ErrorCategory,
    FairplayError,
    RequestNotFound,
)
from ..retry import RetryError
from ..version import __version__

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --------------------------------------------------------------------------------------
# Service Protocol
# --------------------------------------------------------------------------------------


class SettlementService(Protocol):
    """Implemented by `fairplay.service.FairplayService`."""

    async def start_game(self, account: str, stake: int, category: str = "", variant: str = "") -> dict: ...
    async def fulfill(self, sequence_number: int, revealed_seed: str, provider_value: str = "0x") -> dict: ...
    async def get_request(self, request_id: str) -> dict: ...
    async def verify_game(self, request_id: str) -> dict: ...
    async def deposit(self, account: str, amount: int, tx_ref: str) -> dict: ...
    async def withdraw(self, account: str, amount: int, destination: Optional[str] = None) -> dict: ...
    async def treasury_balance(self) -> dict: ...
    async def account_balance(self, account: str) -> dict: ...
    async def user_history(self, account: str, limit: int = 50) -> List[dict]: ...
    async def user_stats(self, account: str) -> dict: ...


# --------------------------------------------------------------------------------------
# Pydantic request models
# --------------------------------------------------------------------------------------

_ADDRESS = r"^0x[0-9a-fA-F]{40}$"
_HEX = r"^(0x)?([0-9a-fA-F]{2})*$"


class StartGameReq(BaseModel):
    account: str = Field(..., pattern=_ADDRESS)
    stake: int = Field(..., gt=0, description="Stake in base units")
    category: str = Field("", max_length=64)
    variant: str = Field("", max_length=64)


class FulfillReq(BaseModel):
    sequence_number: int = Field(..., gt=0)
    revealed_seed: str = Field(..., pattern=_HEX)
    provider_value: str = Field("0x", pattern=_HEX)


class VerifyReq(BaseModel):
    request_id: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")


class DepositReq(BaseModel):
    account: str = Field(..., pattern=_ADDRESS)
    amount: int = Field(..., gt=0)
    tx_ref: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")


class WithdrawReq(BaseModel):
    account: str = Field(..., pattern=_ADDRESS)
    amount: int = Field(..., gt=0)
    destination: Optional[str] = Field(None, pattern=_ADDRESS)


# --------------------------------------------------------------------------------------
# Error mapping
# --------------------------------------------------------------------------------------


def http_error(exc: BaseException) -> HTTPException:
    if isinstance(exc, RetryError):
        return HTTPException(status_code=503, detail={"code": "FAIRPLAY_TRANSIENT", "message": TRY_AGAIN_MESSAGE})
    if isinstance(exc, FairplayError):
        if exc.fatal:
            return HTTPException(status_code=500, detail={"code": "FAIRPLAY_UNDER_REVIEW", "message": UNDER_REVIEW_MESSAGE})
        if exc.category is ErrorCategory.TRANSIENT:
            return HTTPException(status_code=503, detail={"code": exc.code, "message": exc.user_message()})
        status = 404 if isinstance(exc, (RequestNotFound, EntryNotFound)) else 400
        return HTTPException(status_code=status, detail={"code": exc.code, "message": exc.user_message()})
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail={"code": "FAIRPLAY_BAD_REQUEST", "message": str(exc)})
    return HTTPException(status_code=500, detail={"code": "FAIRPLAY_INTERNAL", "message": UNDER_REVIEW_MESSAGE})


async def _guard(call: Awaitable[T]) -> T:
    try:
        return await call
    except (FairplayError, RetryError, ValueError) as e:
        if isinstance(e, FairplayError) and e.fatal:
            logger.error("fatal error surfaced to client as under-review: %s", e)
        else:
            logger.info("request rejected: %s", e)
        raise http_error(e) from e


# --------------------------------------------------------------------------------------
# REST router
# --------------------------------------------------------------------------------------


def build_router(service: SettlementService, *, prefix: str = "") -> APIRouter:
    r = APIRouter(prefix=prefix, tags=["fairplay"])

    @r.post("/games/start")
    async def start_game(req: StartGameReq) -> dict:
        return await _guard(service.start_game(req.account, req.stake, req.category, req.variant))

    @r.post("/games/fulfill")
    async def fulfill(req: FulfillReq) -> dict:
        return await _guard(service.fulfill(req.sequence_number, req.revealed_seed, req.provider_value))

    @r.get("/requests/{request_id}")
    async def get_request(request_id: str) -> dict:
        return await _guard(service.get_request(request_id))

    @r.post("/games/verify")
    async def verify_game(req: VerifyReq) -> dict:
        return await _guard(service.verify_game(req.request_id))

    @r.post("/treasury/deposit")
    async def deposit(req: DepositReq) -> dict:
        return await _guard(service.deposit(req.account, req.amount, req.tx_ref))

    @r.post("/treasury/withdraw")
    async def withdraw(req: WithdrawReq) -> dict:
        return await _guard(service.withdraw(req.account, req.amount, req.destination))

    @r.get("/treasury/balance")
    async def treasury_balance() -> dict:
        return await _guard(service.treasury_balance())

    @r.get("/accounts/{account}/balance")
    async def account_balance(account: str) -> dict:
        return await _guard(service.account_balance(account))

    @r.get("/history/{account}")
    async def history(account: str, limit: int = Query(50, ge=1, le=500)) -> List[Dict[str, Any]]:
        return await _guard(service.user_history(account, limit))

    @r.get("/stats/{account}")
    async def stats(account: str) -> dict:
        return await _guard(service.user_stats(account))

    return r


# --------------------------------------------------------------------------------------
# App factory
# --------------------------------------------------------------------------------------


def create_app(service: Any, *, prefix: str = "", manage_lifecycle: bool = True) -> FastAPI:
    """
    FastAPI app around `service`. With `manage_lifecycle`, the service's
    background loops start and stop with the app.
    """
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()

    app = FastAPI(title="Fairplay settlement", version=__version__, lifespan=lifespan)
    app.include_router(build_router(service, prefix=prefix))
    app.state.service = service

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"ok": True}

    return app


__all__ = ["SettlementService", "build_router", "create_app", "http_error"]
