"""Base read-only store reader interface"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..exceptions import QueryError


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def quote_identifier(name: str) -> str:
    """
    Check a table or column name before it is placed in a statement

    Identifiers cannot be bound as statement parameters, so every name must
    pass this allow-list first.

    Args:
        name: Candidate identifier

    Returns:
        The same name, quoted for use as an identifier

    Raises:
        QueryError: If the name contains anything but letters, digits and '_'
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise QueryError(f"Refusing to query invalid identifier: {name!r}")
    return f'"{name}"'


class StoreReader(ABC):
    """Abstract base class for read-only access to an externally written store"""

    def __init__(self, connection_string: str, timeout: float = 1.0):
        self.connection_string = connection_string
        self.timeout = timeout
        self.connection = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    def is_stale(self) -> bool:
        """Check whether an open handle no longer refers to the current store"""
        return False

    @abstractmethod
    def connect(self) -> None:
        """Open the store read-only"""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close the store handle"""
        pass

    @abstractmethod
    def get_tables(self) -> List[str]:
        """Get list of all tables in the store"""
        pass

    @abstractmethod
    def table_exists(self, table_name: str) -> bool:
        """Check the catalog for a table"""
        pass

    @abstractmethod
    def get_row_count(self, table_name: str) -> int:
        """Get total row count for a table"""
        pass

    @abstractmethod
    def get_max_value(self, table_name: str, column: str = "id") -> Optional[Any]:
        """Get the largest value of a column, None for an empty table"""
        pass

    @abstractmethod
    def get_rows_after(self, table_name: str, last_id: Any, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get up to limit rows with an identifier greater than last_id, oldest first"""
        pass

    @abstractmethod
    def get_latest_rows(self, table_name: str, limit: int, offset: int = 0, order_by: str = "id") -> List[Dict[str, Any]]:
        """Get the most recent rows of a table, newest first by order_by"""
        pass

    @abstractmethod
    def get_config_value(self, key: str) -> Optional[str]:
        """Get the most recently written value for a configuration key"""
        pass

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.disconnect()
