"""
Polar Bridge - cross-chain settlement core and collateralized lending ledger.
"""

__version__ = "0.1.0"
