"""In-memory stand-ins for external systems (development and tests)."""

from .chain import FakeChain

__all__ = ["FakeChain"]
