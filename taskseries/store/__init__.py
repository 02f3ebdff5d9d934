"""Persistent storage for task series and their exceptions."""

from .database import DatabaseManager, StoreTransaction

__all__ = ["DatabaseManager", "StoreTransaction"]
