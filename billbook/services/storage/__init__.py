from typing import Optional
from ...core.config import settings
from .store_base import BillStoreBase
from .sqlite_store import SQLiteBillStore

_bill_store: Optional[SQLiteBillStore] = None


def get_bill_store() -> SQLiteBillStore:
    """
    Get the process-wide bill store, created on first use.

    The database path comes from DATABASE_PATH. API routes receive the store
    through this function as a FastAPI dependency so tests can override it.
    """
    global _bill_store
    if _bill_store is None:
        _bill_store = SQLiteBillStore(settings.database_path)
    return _bill_store


__all__ = ["BillStoreBase", "SQLiteBillStore", "get_bill_store"]
