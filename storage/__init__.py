from storage.db import ConnectionPool, Storage

__all__ = ["ConnectionPool", "Storage"]
