"""Store reader module"""

from .base import StoreReader, quote_identifier
from .sqlite import SQLiteReader

__all__ = [
    "StoreReader",
    "SQLiteReader",
    "quote_identifier",
]
