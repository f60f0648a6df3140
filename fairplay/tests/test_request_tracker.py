import asyncio

import pytest

from fairplay.chain.types import SubmitResponse
from fairplay.commit_reveal import commit, mix_random_value
from fairplay.errors import (
    CommitmentMismatch,
    IntegrityError,
    InsufficientResourceBalance,
    InvalidTransition,
    RequestNotFound,
    RpcCallError,
    SequenceResolutionError,
)
from fairplay.tracker.locks import KeyedLocks
from fairplay.tracker.types import RequestState

from .conftest import PLAYER

SEED = bytes(range(32))
WRONG_SEED = bytes(range(1, 33))
PROVIDER_VALUE = b"\x42" * 32


def _new_request(env, seed=SEED, nonce=None):
    return env.tracker.create(requester=PLAYER, commitment=commit(seed), handle=1, stake=10, nonce=nonce)


@pytest.mark.asyncio
async def test_submit_rejected_when_resource_cannot_cover_fee(env):
    await env.fund_subscription(50)
    req = _new_request(env)

    with pytest.raises(InsufficientResourceBalance):
        await env.tracker.submit(req.id)

    assert env.tracker.get(req.id).state is RequestState.CREATED
    assert env.subscriptions.get(1).balance == 50
    assert env.provider.submissions == []


@pytest.mark.asyncio
async def test_submit_escrows_fee_and_awaits_fulfillment(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)

    assert req.state is RequestState.AWAITING_FULFILLMENT
    assert req.sequence_number == 1
    assert req.fee == 100
    assert req.tx_ref is not None
    assert env.subscriptions.get(1).balance == 50


@pytest.mark.asyncio
async def test_wrong_seed_keeps_request_awaiting_and_raises_alert(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)

    with pytest.raises(CommitmentMismatch) as ei:
        await env.tracker.on_fulfillment(req.sequence_number, WRONG_SEED, PROVIDER_VALUE)
    assert ei.value.fatal

    after = env.tracker.get(req.id)
    assert after.state is RequestState.AWAITING_FULFILLMENT
    assert after.random_value is None
    assert after.under_review
    assert len(env.alerts) == 1
    assert isinstance(env.alerts[0][0], CommitmentMismatch)

    # held for audit: even the right seed is refused until an operator clears it
    with pytest.raises(IntegrityError):
        await env.tracker.on_fulfillment(req.sequence_number, SEED, PROVIDER_VALUE)
    env.tracker.clear_review(req.id)
    done = await env.tracker.on_fulfillment(req.sequence_number, SEED, PROVIDER_VALUE)
    assert done.state is RequestState.FULFILLED


@pytest.mark.asyncio
async def test_correct_seed_fulfills_with_mixed_random_value(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)

    done = await env.tracker.on_fulfillment(req.sequence_number, SEED, PROVIDER_VALUE)

    assert done.state is RequestState.FULFILLED
    assert done.random_value == "0x" + mix_random_value(SEED, PROVIDER_VALUE).hex()
    assert done.revealed_seed == "0x" + SEED.hex()
    assert env.alerts == []


@pytest.mark.asyncio
async def test_duplicate_fulfillment_is_idempotent_but_conflicts_are_refused(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)
    first = await env.tracker.on_fulfillment(req.sequence_number, SEED, PROVIDER_VALUE)
    again = await env.tracker.on_fulfillment(req.sequence_number, SEED, PROVIDER_VALUE)
    assert again == first
    with pytest.raises(InvalidTransition):
        await env.tracker.on_fulfillment(req.sequence_number, SEED, b"\x00" * 32)


@pytest.mark.asyncio
async def test_unknown_sequence_number(env):
    with pytest.raises(RequestNotFound):
        await env.tracker.on_fulfillment(404, SEED)


@pytest.mark.asyncio
async def test_submit_twice_creates_one_provider_request(env):
    await env.fund_subscription(1_000)
    req = _new_request(env)

    first, second = await asyncio.gather(env.tracker.submit(req.id), env.tracker.submit(req.id))
    third = await env.tracker.submit(req.id)

    assert first.id == second.id == third.id
    assert len(env.provider.submissions) == 1
    assert env.subscriptions.get(1).balance == 900
    assert len(env.requests.history(req.id)) == 2


def test_create_is_idempotent_per_request_id(env):
    a = env.tracker.create(requester=PLAYER, commitment=commit(SEED), handle=1, nonce=7, salt=b"s")
    b = env.tracker.create(requester=PLAYER, commitment=commit(WRONG_SEED), handle=1, nonce=7, salt=b"s")
    assert a == b


@pytest.mark.asyncio
async def test_provider_rejection_releases_the_fee(env):
    await env.fund_subscription(150)
    env.provider.mode = "reject"
    req = _new_request(env)

    with pytest.raises(RpcCallError):
        await env.tracker.submit(req.id)

    assert env.tracker.get(req.id).state is RequestState.CREATED
    assert env.subscriptions.get(1).balance == 150


@pytest.mark.asyncio
async def test_unreadable_response_is_awaiting_and_sequence_found_later(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"

    req = await env.tracker.submit(_new_request(env).id)
    assert req.state is RequestState.AWAITING_FULFILLMENT
    assert req.sequence_number is None
    assert env.tracker.unresolved() == [req]

    await env.tracker.wait_for_resolutions()
    resolved = env.tracker.get(req.id)
    assert resolved.sequence_number == 1
    assert env.tracker.unresolved() == []
    # never re-dispatched
    assert len(env.provider.submissions) == 1
    assert env.subscriptions.get(1).balance == 50


@pytest.mark.asyncio
async def test_fulfillment_before_background_resolution_still_lands(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"
    req = await env.tracker.submit(_new_request(env).id)

    done = await env.tracker.on_fulfillment(1, SEED, PROVIDER_VALUE)
    await env.tracker.wait_for_resolutions()

    assert done.id == req.id
    assert done.state is RequestState.FULFILLED


@pytest.mark.asyncio
async def test_undiscoverable_sequence_raises_fatal_alert(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"
    req = await env.tracker.submit(_new_request(env).id)
    env.chain.logs.clear()

    await env.tracker.wait_for_resolutions()

    assert env.tracker.get(req.id).sequence_number is None
    assert len(env.alerts) == 1
    err, alerted = env.alerts[0]
    assert isinstance(err, SequenceResolutionError)
    assert alerted.id == req.id


@pytest.mark.asyncio
async def test_sequence_recovered_by_simulation(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"
    req = await env.tracker.submit(_new_request(env).id)
    env.chain.logs.clear()
    env.chain.simulate = lambda target, data, block, sender: "0x" + (9).to_bytes(32, "big").hex()

    await env.tracker.wait_for_resolutions()

    assert env.tracker.get(req.id).sequence_number == 9
    assert env.alerts == []


@pytest.mark.asyncio
async def test_unexpected_submit_error_releases_the_fee(env, monkeypatch):
    await env.fund_subscription(1_000)
    req = _new_request(env)

    async def broken_submit(handle, request_id, commitment):
        raise ValueError("bad signature")

    monkeypatch.setattr(env.provider, "submit", broken_submit)
    with pytest.raises(ValueError):
        await env.tracker.submit(req.id)

    assert env.tracker.get(req.id).state is RequestState.CREATED
    assert env.subscriptions.get(1).balance == 1_000


@pytest.mark.asyncio
async def test_discovery_retries_before_alerting(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"
    req = await env.tracker.submit(_new_request(env).id)
    env.chain.logs.clear()
    answers = iter([None, 9])

    def flaky(target, data, block, sender):
        seq = next(answers)
        if seq is None:
            raise RpcCallError("header not found")
        return "0x" + seq.to_bytes(32, "big").hex()

    env.chain.simulate = flaky
    await env.tracker.wait_for_resolutions()

    assert env.tracker.get(req.id).sequence_number == 9
    assert len(env.chain.simulate_calls) == 2
    assert env.alerts == []


@pytest.mark.asyncio
async def test_discovery_waits_for_the_submit_receipt(env, monkeypatch):
    await env.fund_subscription(150)
    real_submit = env.provider.submit

    async def receipt_not_yet_mined(handle, request_id, commitment):
        resp = await real_submit(handle, request_id, commitment)
        receipt = env.chain.receipts.pop(resp.tx_ref)
        env.chain.logs.clear()
        asyncio.get_running_loop().call_later(0.05, env.chain.add_receipt, receipt)
        return SubmitResponse(tx_ref=resp.tx_ref)

    monkeypatch.setattr(env.provider, "submit", receipt_not_yet_mined)
    req = await env.tracker.submit(_new_request(env).id)
    assert req.sequence_number is None

    await env.tracker.wait_for_resolutions()

    assert env.tracker.get(req.id).sequence_number == 1
    assert env.chain.simulate_calls == []
    assert env.alerts == []


@pytest.mark.asyncio
async def test_unknown_sequence_looks_up_outstanding_requests_once(env):
    await env.fund_subscription(150)
    env.provider.mode = "unreadable"
    req = await env.tracker.submit(_new_request(env).id)
    env.chain.logs.clear()

    with pytest.raises(RequestNotFound):
        await env.tracker.on_fulfillment(77, SEED)
    await env.tracker.wait_for_resolutions()
    calls = len(env.chain.simulate_calls)

    with pytest.raises(RequestNotFound):
        await env.tracker.on_fulfillment(77, SEED)
    await env.tracker.wait_for_resolutions()

    assert len(env.chain.simulate_calls) == calls
    assert env.tracker.get(req.id).sequence_number is None
    assert len(env.alerts) == 1


@pytest.mark.asyncio
async def test_unknown_sequence_joins_the_background_lookups(env, monkeypatch):
    await env.fund_subscription(1_000)
    env.provider.mode = "unreadable"
    gate = asyncio.Event()
    started = []
    resolve = env.tracker.sequences.resolve

    async def gated(request_id, tx_ref=None):
        started.append(request_id)
        await gate.wait()
        return await resolve(request_id, tx_ref)

    monkeypatch.setattr(env.tracker.sequences, "resolve", gated)
    first = await env.tracker.submit(_new_request(env, nonce=1).id)
    second = await env.tracker.submit(_new_request(env, nonce=2).id)

    lookup = asyncio.create_task(env.tracker.on_fulfillment(2, SEED, PROVIDER_VALUE))
    for _ in range(100):
        if len(started) == 2:
            break
        await asyncio.sleep(0)
    gate.set()
    done = await lookup

    # one lookup per outstanding request, all in flight together
    assert sorted(started) == sorted([first.id, second.id])
    assert done.id == second.id
    assert done.state is RequestState.FULFILLED


@pytest.mark.asyncio
async def test_sweep_expires_exactly_once(env):
    await env.fund_subscription(1_000)
    old = await env.tracker.submit(_new_request(env, nonce=1).id)
    env.clock.advance(200)
    young = await env.tracker.submit(_new_request(env, nonce=2).id)
    env.clock.advance(150)

    expired = await env.tracker.sweep_expired()
    assert [r.id for r in expired] == [old.id]
    assert env.tracker.get(old.id).state is RequestState.EXPIRED
    assert env.tracker.get(young.id).state is RequestState.AWAITING_FULFILLMENT

    assert await env.tracker.sweep_expired() == []

    # a late fulfillment does not resurrect an expired request
    with pytest.raises(InvalidTransition):
        await env.tracker.on_fulfillment(old.sequence_number, SEED, PROVIDER_VALUE)


@pytest.mark.asyncio
async def test_sweep_honours_explicit_now_and_timeout(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)
    start = env.clock()

    assert await env.tracker.sweep_expired(now=start + 10, timeout=10) == []
    assert [r.id for r in await env.tracker.sweep_expired(now=start + 11, timeout=10)] == [req.id]


@pytest.mark.asyncio
async def test_sweep_skips_requests_under_review(env):
    await env.fund_subscription(150)
    req = await env.tracker.submit(_new_request(env).id)
    with pytest.raises(CommitmentMismatch):
        await env.tracker.on_fulfillment(req.sequence_number, WRONG_SEED)

    env.clock.advance(10_000)
    assert await env.tracker.sweep_expired() == []
    env.tracker.clear_review(req.id)
    assert len(await env.tracker.sweep_expired()) == 1


@pytest.mark.asyncio
async def test_keyed_locks_serialize_only_the_same_key():
    locks = KeyedLocks()
    order = []

    async def worker(key, tag):
        async with locks.hold(key):
            order.append(f"{tag}-in")
            await asyncio.sleep(0)
            order.append(f"{tag}-out")

    await asyncio.gather(worker("a", 1), worker("a", 2))
    assert order == ["1-in", "1-out", "2-in", "2-out"]

    order.clear()
    await asyncio.gather(worker("a", 1), worker("b", 2))
    assert order == ["1-in", "2-in", "1-out", "2-out"]
    assert len(locks) == 0
