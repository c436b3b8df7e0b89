"""Database package for the durable state tier."""

from gatekeeper.db.base import Base
from gatekeeper.db.manager import DatabaseManager
from gatekeeper.db.models import StateRecord

__all__ = [
    "Base",
    "DatabaseManager",
    "StateRecord",
]
