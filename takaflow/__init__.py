"""
Takaflow Funds-Transfer Core

A mobile financial-service backend core: PIN-authorized two-party balance
transfers with atomic balance mutation and an append-only transaction log.
"""

__version__ = "1.0.0"
