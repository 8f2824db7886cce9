"""Persistence layer for the screening consensus engine.

:class:`ScreeningStore` wraps a SQLite database and is the only place
that touches SQL.  Uniqueness invariants live in the schema so that
racing writers are arbitrated by the database, not by application code.
"""

from .database import ScreeningStore

__all__ = ["ScreeningStore"]
