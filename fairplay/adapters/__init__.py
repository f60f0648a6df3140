"""Transport adapters (HTTP surface)."""
