"""Shared FastAPI dependencies."""

from database.mints import MintRepository

def get_repository() -> MintRepository:
    """Repository on the shared pool. Overridden in tests."""
    return MintRepository()
