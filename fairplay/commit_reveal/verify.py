# Copyright (c) Fairplay contributors.
# SPDX-License-Identifier: MIT
"""
Verify that a revealed seed matches a prior commitment.

Definition
----------
Given a stored commitment C and a candidate seed s, recompute

    C' = H(domain || s)

and check C' == C using a constant-time comparison.

This module exposes:
- `verify(...)` : True/False, or raises CommitmentMismatch when asked to.
- `normalize_commitment(...)` : turn hex/bytes into 32 raw bytes.
"""

from __future__ import annotations

import binascii
import hmac
from typing import Optional, Union

from fairplay.commit_reveal.commit import commit
from fairplay.constants import COMMITMENT_LEN
from fairplay.errors import CommitmentMismatch

BytesLike = Union[bytes, bytearray, memoryview]


def _from_hex(s: str) -> bytes:
    s = s.lower()
    if s.startswith("0x"):
        s = s[2:]
    try:
        return binascii.unhexlify(s)
    except (binascii.Error, ValueError) as e:
        raise ValueError("invalid hex string") from e


def normalize_commitment(commitment: Union[BytesLike, str]) -> bytes:
    """
    Normalize a commitment into 32 raw bytes.

    Accepts bytes-like values or hex strings with/without 0x.
    """
    if isinstance(commitment, str):
        c = _from_hex(commitment)
    elif isinstance(commitment, (bytes, bytearray, memoryview)):
        c = bytes(commitment)
    else:
        raise TypeError("expected bytes-like object or hex string")

    if len(c) != COMMITMENT_LEN:
        raise ValueError(f"commitment must be exactly {COMMITMENT_LEN} bytes")
    return c


def verify(
    commitment: Union[BytesLike, str],
    candidate_seed: BytesLike,
    *,
    domain_tag: Optional[bytes] = None,
    raise_on_fail: bool = False,
) -> bool:
    """
    Return True iff commit(candidate_seed) equals `commitment`.

    A malformed seed (wrong type or length) is a mismatch, not a crash: the
    seed arrives from an external party.

    Raises
    ------
    CommitmentMismatch
        On mismatch when raise_on_fail=True.
    """
    c_given = normalize_commitment(commitment)
    try:
        c_expected = commit(bytes(candidate_seed), domain_tag=domain_tag)
    except (TypeError, ValueError):
        c_expected = b""

    if c_expected and hmac.compare_digest(c_expected, c_given):
        return True
    if raise_on_fail:
        raise CommitmentMismatch(
            "revealed seed does not match prior commitment",
            details={"commitment": "0x" + c_given.hex()},
        )
    return False


__all__ = ["normalize_commitment", "verify"]
