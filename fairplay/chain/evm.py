"""
fairplay.chain.evm
==================

EVM implementations of the collaborator protocols on top of `JsonRpcClient`:

- EvmChain               ChainReader (balances, receipts, eth_call, logs)
- TxSender               signs with eth_account and submits raw transactions;
                         also the treasury's TransferSender
- EvmRandomnessProvider  fee quotes and request submission via the consuming contract
- EvmSubscriptionRegistry subscription create/fund/consumer management

Usage
-----
    rpc = JsonRpcClient(cfg.rpc_url, timeout=cfg.rpc_timeout_s)
    chain = EvmChain(rpc)
    sender = TxSender(rpc, cfg.treasury_key, cfg.chain_id)
    provider = EvmRandomnessProvider(chain, sender, cfg.consumer_address)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from eth_account import Account

from ..constants import (
    EVENT_RANDOMNESS_REQUESTED,
    SIG_ADD_CONSUMER,
    SIG_BALANCE_OF,
    SIG_CREATE_SUBSCRIPTION,
    SIG_FUND_NATIVE,
    SIG_GET_SUBSCRIPTION,
    SIG_QUOTE_FEE,
    SIG_REMOVE_CONSUMER,
    SIG_REQUEST_RANDOMNESS,
    SIG_TRANSFER_AND_CALL,
    SIG_UPDATE_SUBSCRIPTION_ID,
)
from ..errors import RejectedError, RpcCallError, TransientError
from .abi import decode_subscription, decode_uint, encode_args, encode_call, event_topic, words
from .jsonrpc import JsonRpcClient
from .receipts import wait_for_receipt
from .types import CreateResult, LogEntry, Receipt, SubmitResponse, SubscriptionInfo, norm_hex

log = logging.getLogger(__name__)


def _qty(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


def _block_tag(block_ref: Optional[int]) -> str:
    return "latest" if block_ref is None else hex(int(block_ref))


# ---- Chain reader ----


class EvmChain:
    """ChainReader over a JSON-RPC endpoint."""

    def __init__(self, rpc: JsonRpcClient) -> None:
        self.rpc = rpc

    async def get_balance(self, account: str) -> int:
        return _qty(await self.rpc.request("eth_getBalance", [account, "latest"]))

    async def token_balance(self, token: str, account: str) -> int:
        out = await self.simulate_call(token, encode_call(SIG_BALANCE_OF, account))
        return decode_uint(words(out)[0])

    async def get_transaction_receipt(self, tx_ref: str) -> Optional[Receipt]:
        raw = await self.rpc.request("eth_getTransactionReceipt", [tx_ref])
        if not raw:
            return None
        return Receipt.from_rpc(raw)

    async def simulate_call(
        self,
        target: str,
        data: str,
        *,
        block_ref: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> str:
        call = {"to": target, "data": data}
        if sender:
            call["from"] = sender
        out = await self.rpc.request("eth_call", [call, _block_tag(block_ref)])
        return str(out or "0x")

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[LogEntry]:
        flt = {
            "address": address,
            "topics": list(topics),
            "fromBlock": hex(int(from_block)),
            "toBlock": hex(int(to_block)),
        }
        raw = await self.rpc.request("eth_getLogs", [flt]) or []
        return [LogEntry.from_rpc(item) for item in raw]

    async def block_number(self) -> int:
        return _qty(await self.rpc.request("eth_blockNumber"))


# ---- Signing / submission ----


class TxSender:
    """
    Signs legacy transactions with a local key and submits them.

    Nonce allocation is serialized so concurrent senders never reuse a nonce.
    """

    def __init__(self, rpc: JsonRpcClient, private_key: str, chain_id: int) -> None:
        self.rpc = rpc
        self.chain_id = int(chain_id)
        self._key = private_key
        self.address = Account.from_key(private_key).address.lower()
        self._nonce_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"TxSender(address={self.address}, chain_id={self.chain_id})"

    async def send(self, to: str, data: str = "0x", *, value: int = 0, gas: Optional[int] = None) -> str:
        async with self._nonce_lock:
            nonce = _qty(await self.rpc.request("eth_getTransactionCount", [self.address, "pending"]))
            gas_price = _qty(await self.rpc.request("eth_gasPrice"))
            if gas is None:
                est = {"from": self.address, "to": to, "data": data, "value": hex(int(value))}
                gas = _qty(await self.rpc.request("eth_estimateGas", [est]))
            tx = {
                "to": to,
                "value": int(value),
                "data": data,
                "gas": int(gas),
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": self.chain_id,
            }
            signed = Account.sign_transaction(tx, self._key)
            tx_hash = await self.rpc.request("eth_sendRawTransaction", ["0x" + signed.raw_transaction.hex()])
        log.info("tx dispatched to=%s nonce=%d hash=%s", to, nonce, tx_hash)
        return norm_hex(str(tx_hash))

    async def transfer(self, to: str, amount: int, *, gas_limit: int) -> str:
        return await self.send(to, "0x", value=int(amount), gas=int(gas_limit))

    def require_caller(self, caller: str) -> None:
        if norm_hex(caller) != self.address:
            raise RejectedError(
                "no signing key for caller",
                details={"caller": caller, "signer": self.address},
            )


# ---- Randomness provider ----


class EvmRandomnessProvider:
    """
    Submits randomness requests through the consuming contract.

    The submission's sequence number is read back from the RandomnessRequested
    event; when the receipt or event cannot be read the response carries only
    the tx hash.
    """

    def __init__(self, chain: EvmChain, sender: TxSender, consumer_address: str, *, receipt_timeout_s: float = 30.0) -> None:
        self.chain = chain
        self.sender = sender
        self.consumer_address = norm_hex(consumer_address)
        self.receipt_timeout_s = receipt_timeout_s

    async def quote_fee(self, handle: int) -> int:
        out = await self.chain.simulate_call(self.consumer_address, encode_call(SIG_QUOTE_FEE, int(handle)))
        return decode_uint(words(out)[0])

    async def submit(self, handle: int, request_id: str, commitment: bytes) -> SubmitResponse:
        data = encode_call(SIG_REQUEST_RANDOMNESS, request_id, bytes(commitment))
        tx_ref = await self.sender.send(self.consumer_address, data)
        try:
            receipt = await wait_for_receipt(self.chain, tx_ref, timeout_s=self.receipt_timeout_s)
        except TransientError:
            log.warning("submit: receipt unavailable for %s; sequence number unknown", tx_ref)
            return SubmitResponse(tx_ref=tx_ref)
        if not receipt.succeeded:
            raise RpcCallError("randomness request reverted", details={"tx_ref": tx_ref})

        topic0 = event_topic(EVENT_RANDOMNESS_REQUESTED)
        rid = norm_hex(request_id)
        for entry in receipt.logs:
            if len(entry.topics) >= 3 and entry.topics[0] == topic0 and entry.topics[2] == rid:
                return SubmitResponse(tx_ref=tx_ref, sequence_number=decode_uint(entry.topics[1]))
        return SubmitResponse(tx_ref=tx_ref)


# ---- Subscription registry ----


class EvmSubscriptionRegistry:
    def __init__(
        self,
        chain: EvmChain,
        sender: TxSender,
        registry_address: str,
        *,
        fee_token_address: Optional[str] = None,
    ) -> None:
        self.chain = chain
        self.sender = sender
        self.registry_address = norm_hex(registry_address)
        self.fee_token_address = norm_hex(fee_token_address) if fee_token_address else None

    async def create_subscription(self, owner: str) -> CreateResult:
        self.sender.require_caller(owner)
        tx_ref = await self.sender.send(self.registry_address, encode_call(SIG_CREATE_SUBSCRIPTION))
        # Transaction return values are not part of the receipt; the handle is resolved separately.
        return CreateResult(tx_ref=tx_ref)

    async def get_subscription(self, handle: int) -> Optional[SubscriptionInfo]:
        try:
            out = await self.chain.simulate_call(self.registry_address, encode_call(SIG_GET_SUBSCRIPTION, int(handle)))
        except RpcCallError:
            return None
        if out in ("0x", ""):
            return None
        balance, native_balance, req_count, owner, consumers = decode_subscription(out)
        if int(owner, 16) == 0:
            return None
        return SubscriptionInfo(
            handle=int(handle),
            owner=owner,
            balance=balance,
            native_balance=native_balance,
            request_count=req_count,
            consumers=frozenset(consumers),
        )

    async def fund(self, handle: int, amount: int, caller: str, currency: str) -> str:
        self.sender.require_caller(caller)
        if currency == "token":
            if not self.fee_token_address:
                raise RejectedError("token funding requires a fee token address")
            payload = "0x" + encode_args(["uint256"], [int(handle)]).hex()
            data = encode_call(SIG_TRANSFER_AND_CALL, self.registry_address, int(amount), payload)
            return await self.sender.send(self.fee_token_address, data)
        return await self.sender.send(
            self.registry_address, encode_call(SIG_FUND_NATIVE, int(handle)), value=int(amount)
        )

    async def add_consumer(self, handle: int, consumer: str, caller: str) -> str:
        self.sender.require_caller(caller)
        return await self.sender.send(self.registry_address, encode_call(SIG_ADD_CONSUMER, int(handle), consumer))

    async def remove_consumer(self, handle: int, consumer: str, caller: str) -> str:
        self.sender.require_caller(caller)
        return await self.sender.send(self.registry_address, encode_call(SIG_REMOVE_CONSUMER, int(handle), consumer))

    async def set_consumer_handle(self, consumer_contract: str, handle: int) -> str:
        return await self.sender.send(norm_hex(consumer_contract), encode_call(SIG_UPDATE_SUBSCRIPTION_ID, int(handle)))


__all__ = [
    "EvmChain",
    "TxSender",
    "EvmRandomnessProvider",
    "EvmSubscriptionRegistry",
]
