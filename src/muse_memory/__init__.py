"""Per-project memory layer for the Muse writing assistant."""

__version__ = "0.1.0"
