"""
Payment Engine

A ledger-style payment backend with serialized admission queues, circuit
breakers, account lockout, atomic transfers and recurring mandate debits.
All money arithmetic uses Decimal.
"""

__version__ = "1.0.0"
