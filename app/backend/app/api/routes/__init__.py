"""API routes package."""

from . import races, claims

__all__ = ["races", "claims"]
