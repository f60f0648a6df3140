import asyncio

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from fairplay.adapters.rpc_mount import create_app, http_error
from fairplay.chain.types import Receipt
from fairplay.errors import CommitmentMismatch, InsufficientTreasuryFunds, RequestNotFound, RpcUnavailable
from fairplay.retry import RetryError
from fairplay.service import FairplayService
from fairplay.settlement.outcome import MultiplierTable
from fairplay.store.memory import MemoryKeyValue

from .conftest import (
    CONSUMER,
    OWNER,
    PLAYER,
    TREASURY,
    FakeChain,
    FakeProvider,
    FakeRegistry,
    FakeSender,
    make_config,
    tx_hash,
)

UNDER_REVIEW = {"code": "FAIRPLAY_UNDER_REVIEW", "message": "this request is under review"}


class Stack:
    def __init__(self):
        self.chain = FakeChain()
        self.sender = FakeSender(self.chain)
        self.registry = FakeRegistry(self.chain)
        self.service = FairplayService.build(
            make_config(),
            chain=self.chain,
            provider=FakeProvider(self.chain),
            registry=self.registry,
            sender=self.sender,
            evaluator=MultiplierTable([(1, 20_000)]),
            kv=MemoryKeyValue(),
        )
        self.registry.seed(1, OWNER, native_balance=1_000, consumers=[CONSUMER])
        asyncio.run(self.service.subscriptions.refresh(1))
        self.service.subscriptions.active_handle = 1

    def deposit_receipt(self, amount):
        tx = tx_hash()
        self.chain.head += 1
        self.chain.add_receipt(Receipt(tx_hash=tx, status=1, block_number=self.chain.head))
        self.chain.balances[TREASURY] = self.chain.balances.get(TREASURY, 0) + amount
        return tx


@pytest.fixture
def stack():
    return Stack()


@pytest.fixture
def client(stack):
    with TestClient(create_app(stack.service, manage_lifecycle=False)) as c:
        yield c


def _deposit(client, stack, amount=1_000):
    r = client.post("/treasury/deposit", json={"account": PLAYER, "amount": amount, "tx_ref": stack.deposit_receipt(amount)})
    assert r.status_code == 200, r.text
    return r.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_deposit_and_balances(client, stack):
    entry = _deposit(client, stack)
    assert entry["status"] == "confirmed"
    assert client.get(f"/accounts/{PLAYER}/balance").json() == {"account": PLAYER, "balance": 1_000, "available": 1_000}

    report = client.get("/treasury/balance").json()
    assert report["liabilities"] == 1_000
    assert report["consistent"] is True
    assert report["address"] == TREASURY


def test_start_game_and_lookup(client, stack):
    _deposit(client, stack)
    r = client.post("/games/start", json={"account": PLAYER, "stake": 100, "category": "coinflip"})
    assert r.status_code == 200, r.text
    view = r.json()
    assert view["sequenceNumber"] == 1
    assert view["randomValue"] is None

    got = client.get(f"/requests/{view['requestId']}").json()
    assert got["state"] == "awaiting_fulfillment"
    assert got["commitment"].startswith("0x")
    assert client.get(f"/accounts/{PLAYER}/balance").json()["available"] == 900


def test_fulfill_verify_history_round_trip(stack):
    tx = stack.deposit_receipt(1_000)
    deposit = asyncio.run(stack.service.deposit(PLAYER, 1_000, tx))
    assert deposit["status"] == "confirmed"
    started = asyncio.run(stack.service.coordinator.start_game(PLAYER, 100, "coinflip"))
    rid = started.request.id

    with TestClient(create_app(stack.service, manage_lifecycle=False)) as client:
        r = client.post(
            "/games/fulfill",
            json={"sequence_number": started.request.sequence_number, "revealed_seed": "0x" + started.seed.hex()},
        )
        assert r.status_code == 200, r.text
        assert r.json()["outcome"]["payout"] == 200

        assert client.post("/games/verify", json={"request_id": rid}).json()["verified"] is True
        (game,) = client.get(f"/history/{PLAYER}").json()
        assert game["requestId"] == rid
        assert client.get(f"/stats/{PLAYER}").json()["paidOut"] == 200


def test_tampered_fulfillment_is_under_review(client, stack):
    _deposit(client, stack)
    client.post("/games/start", json={"account": PLAYER, "stake": 100})
    r = client.post("/games/fulfill", json={"sequence_number": 1, "revealed_seed": "0x" + "00" * 32})
    assert r.status_code == 500
    assert r.json() == {"detail": UNDER_REVIEW}


def test_withdraw(client, stack):
    _deposit(client, stack)
    r = client.post("/treasury/withdraw", json={"account": PLAYER, "amount": 300})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending"
    assert r.json()["explorerLink"].startswith("https://etherscan.io/tx/0x")
    assert stack.sender.transfers == [(PLAYER, 300)]


def test_policy_rejections_carry_code_and_message(client, stack):
    _deposit(client, stack, 100)
    r = client.post("/treasury/withdraw", json={"account": PLAYER, "amount": 500})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "FAIRPLAY_INSUFFICIENT_ACCOUNT_BALANCE"

    stack.chain.balances[TREASURY] = 10
    r = client.post("/treasury/withdraw", json={"account": PLAYER, "amount": 50})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "FAIRPLAY_INSUFFICIENT_TREASURY_FUNDS"
    assert stack.sender.transfers == []


def test_unknown_request_and_bad_input(client):
    r = client.get("/requests/0x" + "ab" * 32)
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "FAIRPLAY_REQUEST_NOT_FOUND"
    assert client.post("/games/start", json={"account": "0x1234", "stake": 1}).status_code == 422
    assert client.post("/games/start", json={"account": PLAYER, "stake": 0}).status_code == 422


def test_exhausted_retries_say_try_again(client, stack):
    stack.chain.balance_failures = 10
    r = client.get("/treasury/balance")
    assert r.status_code == 503
    assert r.json()["detail"]["code"] == "FAIRPLAY_TRANSIENT"


def test_http_error_mapping():
    assert http_error(RetryError(RpcUnavailable("x"), 3)).status_code == 503
    assert http_error(RpcUnavailable("x")).status_code == 503
    assert http_error(RequestNotFound(request_id="0x1")).status_code == 404
    assert http_error(InsufficientTreasuryFunds(required=2, available=1)).status_code == 400
    fatal = http_error(CommitmentMismatch("seed does not match"))
    assert fatal.status_code == 500 and fatal.detail == UNDER_REVIEW
    assert http_error(ValueError("bad")).status_code == 400
    assert http_error(KeyError("boom")).status_code == 500
