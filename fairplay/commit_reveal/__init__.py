# Copyright (c) Fairplay contributors.
# SPDX-License-Identifier: MIT
"""
Commitment codec: bind a request to a seed before the provider can see the outcome.
"""

from .commit import commit, commit_hex, derive_request_id, generate_seed, mix_random_value
from .verify import normalize_commitment, verify

__all__ = [
    "commit",
    "commit_hex",
    "derive_request_id",
    "generate_seed",
    "mix_random_value",
    "normalize_commitment",
    "verify",
]
