"""
Bank Cards Ledger

Card accounts and money movement between them: encrypted card secrets,
balance invariants under concurrent transfers, and the card and
block-request lifecycles.
"""

__version__ = "1.0.0"
