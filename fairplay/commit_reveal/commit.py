# Copyright (c) Fairplay contributors.
# SPDX-License-Identifier: MIT
"""
Commitment construction for request seeds.

Definition
----------
C = H( domain_tag || seed )

- H is SHA3-256.
- `domain_tag` separates request commitments from every other hash in the system.
- `seed` is generated by the settlement side before the request is submitted,
  so the provider only ever sees C until fulfillment.

The final random value delivered to a game mixes the revealed seed with the
provider's contribution:

R = H( MIX_TAG || seed || provider_value )
"""

from __future__ import annotations

import secrets
from hashlib import sha3_256
from typing import Optional

from fairplay.constants import (
    COMMIT_DOMAIN_TAG,
    MAX_SEED_LEN,
    MIN_SEED_LEN,
    MIX_DOMAIN_TAG,
    REQUEST_ID_DOMAIN_TAG,
    SEED_LEN,
)


def _validate_seed(seed: bytes) -> None:
    if not isinstance(seed, (bytes, bytearray)):
        raise TypeError("seed must be bytes")
    if not (MIN_SEED_LEN <= len(seed) <= MAX_SEED_LEN):
        raise ValueError(f"seed length must be in [{MIN_SEED_LEN}, {MAX_SEED_LEN}] bytes")


def generate_seed(n: int = SEED_LEN) -> bytes:
    """Fresh uniformly random seed bytes from the OS CSPRNG."""
    if not (MIN_SEED_LEN <= n <= MAX_SEED_LEN):
        raise ValueError(f"seed length must be in [{MIN_SEED_LEN}, {MAX_SEED_LEN}] bytes")
    return secrets.token_bytes(n)


def commit(seed: bytes, *, domain_tag: Optional[bytes] = None) -> bytes:
    """
    Compute the commitment C = SHA3-256(domain || seed).

    Pure and deterministic; returns 32 bytes.
    """
    _validate_seed(seed)
    tag = COMMIT_DOMAIN_TAG if domain_tag is None else domain_tag
    if not tag:
        raise ValueError("domain_tag must be non-empty")

    h = sha3_256()
    h.update(tag)
    h.update(bytes(seed))
    return h.digest()


def commit_hex(seed: bytes, *, domain_tag: Optional[bytes] = None) -> str:
    """0x-prefixed hex wrapper for `commit`."""
    return "0x" + commit(seed, domain_tag=domain_tag).hex()


def mix_random_value(seed: bytes, provider_value: bytes = b"") -> bytes:
    """Combine the revealed seed with the provider's contribution into the final 32-byte value."""
    _validate_seed(seed)
    h = sha3_256()
    h.update(MIX_DOMAIN_TAG)
    h.update(bytes(seed))
    h.update(bytes(provider_value))
    return h.digest()


def derive_request_id(requester: str, nonce: int, salt: bytes) -> str:
    """
    Deterministic request id from requester + nonce + timestamp salt.

    Returned as 0x-prefixed 32-byte hex so it can be passed on-chain as bytes32.
    """
    if nonce < 0:
        raise ValueError("nonce must be >= 0")
    h = sha3_256()
    h.update(REQUEST_ID_DOMAIN_TAG)
    h.update(requester.lower().encode("utf-8"))
    h.update(int(nonce).to_bytes(8, "big"))
    h.update(bytes(salt))
    return "0x" + h.hexdigest()


__all__ = [
    "generate_seed",
    "commit",
    "commit_hex",
    "mix_random_value",
    "derive_request_id",
]
