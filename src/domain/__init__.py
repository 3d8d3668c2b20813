"""Domain models and types for the salvage cash ledger and compliance reporting.

This package contains in-memory (Pydantic) models describing cash accounts,
the transaction log, scheduled compliance reports and buffered offline writes.
They are independent from persistence models so that business logic and
testing can evolve without DB coupling.
"""

__all__ = [
    "cash",
    "compliance",
    "errors",
    "offline",
]
