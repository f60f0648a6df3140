"""
Async HTTP JSON-RPC 2.0 client.

- httpx.AsyncClient with a per-request timeout.
- Transport failures and retriable HTTP statuses (429/502/503/504) raise
  `RpcUnavailable`; timeouts raise `RpcTimeout`. Both are Transient, so the
  caller's RetryPolicy decides whether to try again.
- JSON-RPC error objects raise `RpcCallError` (nonce messages raise
  `NonceContention`) and are not retried here.

Example:
    async with JsonRpcClient("http://localhost:8545") as rpc:
        head = await rpc.request("eth_blockNumber")
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Union

import httpx

from ..errors import NonceContention, RpcCallError, RpcTimeout, RpcUnavailable
from ..metrics import METRICS
from ..version import __version__

log = logging.getLogger(__name__)

JSON = Union[dict, list, str, int, float, bool, None]
Params = Union[Sequence[Any], Mapping[str, Any], None]

_NONCE_MARKERS = ("nonce too low", "replacement transaction underpriced", "already known")


def _is_retriable_http(status: int) -> bool:
    return status in (429, 502, 503, 504)


@dataclass
class JsonRpcClient:
    """Asynchronous JSON-RPC 2.0 client over HTTP."""

    url: str
    timeout: float = 30.0
    headers: Optional[Mapping[str, str]] = None
    transport: Optional[httpx.AsyncBaseTransport] = None
    _ids: Iterator[int] = field(default_factory=lambda: count(start=int(time.time() * 1000)))
    _client: Optional[httpx.AsyncClient] = field(init=False, default=None)

    def __post_init__(self) -> None:
        merged: Dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"fairplay/{__version__}",
        }
        if self.headers:
            merged.update(dict(self.headers))
        self._client = httpx.AsyncClient(timeout=self.timeout, headers=merged, transport=self.transport)

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # --- public API ------------------------------------------------------

    async def request(self, method: str, params: Params = None) -> JSON:
        """Perform a single JSON-RPC request and return `result`."""
        payload = self._make_payload(method, params)
        with METRICS.rpc_timer(method):
            resp = await self._send(payload)
        return self._handle_response(method, resp)

    # --- internals -------------------------------------------------------

    def _make_payload(self, method: str, params: Params) -> Dict[str, Any]:
        if params is None:
            params = []
        elif isinstance(params, Mapping):
            params = dict(params)
        elif isinstance(params, Sequence) and not isinstance(params, (str, bytes, bytearray)):
            params = list(params)
        else:
            params = [params]  # type: ignore[list-item]
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    async def _send(self, payload: Dict[str, Any]) -> JSON:
        assert self._client is not None
        body = json.dumps(payload, separators=(",", ":"))
        try:
            r = await self._client.post(self.url, content=body)
        except httpx.TimeoutException as e:
            raise RpcTimeout(f"rpc timeout calling {payload['method']}", details={"error": str(e)}) from e
        except httpx.TransportError as e:
            raise RpcUnavailable(f"rpc transport error calling {payload['method']}", details={"error": str(e)}) from e

        if _is_retriable_http(r.status_code):
            raise RpcUnavailable(f"HTTP {r.status_code} from rpc", details={"status": r.status_code})
        try:
            return r.json()
        except ValueError as e:
            raise RpcUnavailable(
                "non-JSON response from rpc",
                details={"status": r.status_code, "body": r.text[:256]},
            ) from e

    def _handle_response(self, method: str, resp: JSON) -> JSON:
        if not isinstance(resp, dict):
            raise RpcUnavailable("invalid JSON-RPC response type", details={"type": type(resp).__name__})
        if resp.get("error"):
            err = resp["error"] or {}
            message = str(err.get("message", "unknown error"))
            if any(m in message.lower() for m in _NONCE_MARKERS):
                raise NonceContention(message, details={"method": method})
            log.debug("rpc error from %s: %s", method, message)
            raise RpcCallError(message, rpc_code=err.get("code"), data=err.get("data"))
        if "result" not in resp:
            raise RpcUnavailable("malformed JSON-RPC response", details={"method": method})
        return resp["result"]


__all__ = ["JsonRpcClient"]
