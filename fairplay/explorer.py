"""
Block-explorer links handed to the front end alongside fulfillment results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote


@dataclass(frozen=True)
class ExplorerLinks:
    explorer_url: str = "https://etherscan.io"
    entropy_explorer_url: str = "https://entropy-explorer.pyth.network"
    chain: str = "ethereum"

    @classmethod
    def from_config(cls, cfg: Any) -> "ExplorerLinks":
        return cls(
            explorer_url=cfg.explorer_url,
            entropy_explorer_url=cfg.entropy_explorer_url,
            chain=cfg.explorer_chain,
        )

    def tx_link(self, tx_ref: Optional[str]) -> Optional[str]:
        if not tx_ref:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_ref}"

    def entropy_link(self, tx_ref: Optional[str]) -> Optional[str]:
        if not tx_ref:
            return None
        return f"{self.entropy_explorer_url.rstrip('/')}/?chain={quote(self.chain)}&search={tx_ref}"


__all__ = ["ExplorerLinks"]
