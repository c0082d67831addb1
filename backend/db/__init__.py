from .sqlite_client import Memory, RuntimeMeta, SQLiteClient

__all__ = ["Memory", "RuntimeMeta", "SQLiteClient"]
