"""
Trade replication from master wallets to copier accounts.

Sizing, risk checks and order fan-out for every active copy relationship.
"""

__version__ = "1.0.0"
