"""
Version helpers for the fairplay package.

Resolution order:
1) importlib.metadata (if the distribution is installed),
2) the static BASE_VERSION below.
"""
from __future__ import annotations

from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version as _pkg_version

# Bump this when making intentional, source-level releases.
BASE_VERSION = "0.3.0"

_PKG_NAME = "fairplay-settlement"


@lru_cache(maxsize=1)
def get_version() -> str:
    try:
        return _pkg_version(_PKG_NAME)
    except PackageNotFoundError:
        return BASE_VERSION


__version__ = get_version()

__all__ = ["BASE_VERSION", "get_version", "__version__"]
