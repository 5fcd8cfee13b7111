"""
Storage Package.

Durable persistence for the threat scan pipeline.

Modules:
- database: engine, sessions, schema creation
- repository: ScanStore, the keyed store used by every component
- models/: ORM tables
"""

from .database import Database
from .repository import ScanStore


__all__ = [
    "Database",
    "ScanStore",
]
