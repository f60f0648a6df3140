"""
fairplay.chain.abi
==================

Just enough of the Solidity ABI for the calls and events this package uses:

- keccak-256 (pycryptodome), function selectors and event topics
- head/tail encoding for uint256, address, bytes32 and dynamic bytes
- 32-byte word decoding helpers for return data and event payloads

Example
-------
    data = encode_call("addConsumer(uint256,address)", 7, "0xabc…")
    handle = decode_uint(topic)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, List, Sequence, Tuple

from Crypto.Hash import keccak as _keccak

WORD = 32
_UINT256_MAX = (1 << 256) - 1


def keccak256(data: bytes) -> bytes:
    h = _keccak.new(digest_bits=256)
    h.update(bytes(data))
    return h.digest()


@lru_cache(maxsize=128)
def selector(signature: str) -> str:
    """0x-prefixed 4-byte function selector for a canonical signature."""
    return "0x" + keccak256(signature.encode("ascii"))[:4].hex()


@lru_cache(maxsize=128)
def event_topic(signature: str) -> str:
    """0x-prefixed 32-byte topic0 for a canonical event signature."""
    return "0x" + keccak256(signature.encode("ascii")).hex()


def _strip0x(s: str) -> str:
    return s[2:] if s.startswith(("0x", "0X")) else s


def hex_to_bytes(s: str) -> bytes:
    return bytes.fromhex(_strip0x(s or ""))


# ---- Encoding ----


def _enc_uint(value: int) -> bytes:
    v = int(value)
    if not (0 <= v <= _UINT256_MAX):
        raise ValueError(f"uint256 out of range: {value}")
    return v.to_bytes(WORD, "big")


def _enc_address(value: str) -> bytes:
    raw = hex_to_bytes(value)
    if len(raw) != 20:
        raise ValueError(f"address must be 20 bytes: {value!r}")
    return raw.rjust(WORD, b"\x00")


def _enc_bytes32(value: Any) -> bytes:
    raw = hex_to_bytes(value) if isinstance(value, str) else bytes(value)
    if len(raw) != WORD:
        raise ValueError("bytes32 value must be exactly 32 bytes")
    return raw


def _enc_dynamic_bytes(value: Any) -> bytes:
    raw = hex_to_bytes(value) if isinstance(value, str) else bytes(value)
    padded = raw + b"\x00" * ((-len(raw)) % WORD)
    return _enc_uint(len(raw)) + padded


def _param_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t.strip() for t in inner.split(",") if t.strip()]


def encode_args(types: Sequence[str], values: Sequence[Any]) -> bytes:
    if len(types) != len(values):
        raise ValueError(f"expected {len(types)} arguments, got {len(values)}")
    head: List[bytes] = []
    tail: List[bytes] = []
    head_len = WORD * len(types)
    for t, v in zip(types, values):
        if t == "bytes":
            head.append(_enc_uint(head_len + sum(len(x) for x in tail)))
            tail.append(_enc_dynamic_bytes(v))
        elif t.startswith("uint"):
            head.append(_enc_uint(v))
        elif t == "address":
            head.append(_enc_address(v))
        elif t == "bytes32":
            head.append(_enc_bytes32(v))
        else:
            raise ValueError(f"unsupported ABI type: {t}")
    return b"".join(head) + b"".join(tail)


def encode_call(signature: str, *args: Any) -> str:
    """0x-hex calldata: selector || encoded args."""
    return selector(signature) + encode_args(_param_types(signature), args).hex()


# ---- Decoding ----


def words(data: str) -> List[bytes]:
    raw = hex_to_bytes(data)
    if len(raw) % WORD:
        raise ValueError("ABI data length is not a multiple of 32 bytes")
    return [raw[i : i + WORD] for i in range(0, len(raw), WORD)]


def decode_uint(word: Any) -> int:
    raw = hex_to_bytes(word) if isinstance(word, str) else bytes(word)
    if len(raw) != WORD:
        raise ValueError("expected a 32-byte word")
    return int.from_bytes(raw, "big")


def decode_address(word: Any) -> str:
    raw = hex_to_bytes(word) if isinstance(word, str) else bytes(word)
    if len(raw) != WORD:
        raise ValueError("expected a 32-byte word")
    return "0x" + raw[12:].hex()


def decode_subscription(data: str) -> Tuple[int, int, int, str, List[str]]:
    """
    Decode getSubscription(uint256) return data:
    (uint96 balance, uint96 nativeBalance, uint64 reqCount, address owner, address[] consumers)
    """
    w = words(data)
    if len(w) < 5:
        raise ValueError("getSubscription return data too short")
    balance, native_balance, req_count = decode_uint(w[0]), decode_uint(w[1]), decode_uint(w[2])
    owner = decode_address(w[3])
    offset = decode_uint(w[4]) // WORD
    count = decode_uint(w[offset]) if offset < len(w) else 0
    consumers = [decode_address(w[offset + 1 + i]) for i in range(count)]
    return balance, native_balance, req_count, owner, consumers


__all__ = [
    "keccak256",
    "selector",
    "event_topic",
    "hex_to_bytes",
    "encode_args",
    "encode_call",
    "words",
    "decode_uint",
    "decode_address",
    "decode_subscription",
]
