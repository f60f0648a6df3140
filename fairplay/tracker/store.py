"""
Request persistence over a KeyValue backend.

Layout
------
  req:<id>                    current version (JSON)
  audit:<id>:<version>        every version ever written; never deleted
  seq:<sequence number>       sequence number -> request id index

A sequence number can be bound to one request only.
"""

from __future__ import annotations

from typing import Iterator, List, Optional

from ..errors import IntegrityError
from ..store import KeyValue, decode_record, encode_record
from .types import RandomnessRequest, RequestState

_REQ = b"req:"
_AUDIT = b"audit:"
_SEQ = b"seq:"


def _req_key(request_id: str) -> bytes:
    return _REQ + request_id.encode("ascii")


def _seq_key(seq: int) -> bytes:
    return _SEQ + f"{int(seq):020d}".encode("ascii")


class RequestStore:
    def __init__(self, kv: KeyValue) -> None:
        self.kv = kv

    def get(self, request_id: str) -> Optional[RandomnessRequest]:
        raw = self.kv.get(_req_key(request_id))
        return RandomnessRequest.from_dict(decode_record(raw)) if raw else None

    def id_for_sequence(self, sequence_number: int) -> Optional[str]:
        raw = self.kv.get(_seq_key(sequence_number))
        return raw.decode("ascii") if raw else None

    def put(self, req: RandomnessRequest) -> RandomnessRequest:
        with self.kv.transaction():
            if req.sequence_number is not None:
                bound = self.id_for_sequence(req.sequence_number)
                if bound is not None and bound != req.id:
                    raise IntegrityError(
                        "sequence number already bound to another request",
                        details={"sequence_number": req.sequence_number, "request_id": req.id, "bound_to": bound},
                    )
                self.kv.put(_seq_key(req.sequence_number), req.id.encode("ascii"))
            blob = encode_record(req.to_dict())
            self.kv.put(_req_key(req.id), blob)
            self.kv.put(_AUDIT + f"{req.id}:{req.version:08d}".encode("ascii"), blob)
        return req

    def iter_all(self) -> Iterator[RandomnessRequest]:
        for _, raw in self.kv.iter_prefix(_REQ):
            yield RandomnessRequest.from_dict(decode_record(raw))

    def in_state(self, state: RequestState) -> List[RandomnessRequest]:
        return [r for r in self.iter_all() if r.state is state]

    def history(self, request_id: str) -> List[RandomnessRequest]:
        prefix = _AUDIT + f"{request_id}:".encode("ascii")
        return [RandomnessRequest.from_dict(decode_record(raw)) for _, raw in self.kv.iter_prefix(prefix)]


__all__ = ["RequestStore"]
