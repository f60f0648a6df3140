"""Game history and provably-fair result verification."""

from .service import GameHistory

__all__ = ["GameHistory"]
