"""
Polar Bridge - Persistence

The store is the single source of truth shared by every component.
"""

from .base import BridgeStore
from .memory import MemoryStore

__all__ = ["BridgeStore", "MemoryStore"]
