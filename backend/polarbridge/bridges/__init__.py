"""
Polar Bridge - External Bridges

HTTP adapters for the two chain gateways and the upstream price source.
"""

from .chain import (
    BalanceResult,
    ChainClient,
    ChainResult,
    EventPage,
    HttpChainClient,
    LockResult,
    SubmitResult,
    TxStatusResult,
)
from .oracle_client import CoinGeckoPriceSource

__all__ = [
    "BalanceResult",
    "ChainClient",
    "ChainResult",
    "EventPage",
    "HttpChainClient",
    "LockResult",
    "SubmitResult",
    "TxStatusResult",
    "CoinGeckoPriceSource",
]
