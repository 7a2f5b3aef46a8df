"""Utility helpers for MoneySync."""

from .clock import Clock, ensure_utc, from_db_timestamp, to_db_timestamp, utcnow

__all__ = ["Clock", "ensure_utc", "from_db_timestamp", "to_db_timestamp", "utcnow"]
