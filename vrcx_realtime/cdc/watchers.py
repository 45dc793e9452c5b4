"""Watcher set reconciliation"""

import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from loguru import logger

from ..connectors.base import StoreReader
from .base import CDCError, Scope, StoreUnavailableError, WatchTarget, WatchedTable


class WatcherSet:
    """
    Mapping from table name to watch state

    Tables join when the resolver first reports them and leave as soon as it
    stops reporting them. A table that comes back later starts over from its
    then-current maximum id, so rows written while it was not watched are
    never delivered.

    Only the poll thread mutates the set; the lock lets status readers on
    other threads iterate it safely.
    """

    def __init__(self):
        self._watchers: Dict[str, WatchedTable] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._watchers)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self._watchers

    def __iter__(self) -> Iterator[WatchedTable]:
        with self._lock:
            return iter(list(self._watchers.values()))

    def get(self, table_name: str) -> Optional[WatchedTable]:
        return self._watchers.get(table_name)

    def reconcile(self, reader: StoreReader, targets: Iterable[WatchTarget]) -> Tuple[List[str], List[str]]:
        """
        Bring the set in line with the resolver's current targets

        Tables present in both keep their watcher untouched.

        Args:
            reader: Open store reader, used to seed new high-water marks
            targets: Tables that should be watched

        Returns:
            Names of the tables added and removed
        """
        targets = list(targets)
        target_names = {target.table_name for target in targets}

        added = []
        for target in targets:
            if target.table_name in self._watchers:
                continue
            mark = self.current_max_id(reader, target.table_name)
            watcher = WatchedTable(
                scope=target.scope,
                subtype=target.subtype,
                table_name=target.table_name,
                high_water_mark=mark,
            )
            with self._lock:
                self._watchers[target.table_name] = watcher
            added.append(target.table_name)
            logger.info(f"Watching {target.table_name} ({target.scope.value}/{target.subtype}) from id {mark}")

        with self._lock:
            removed = [name for name in self._watchers if name not in target_names]
            for name in removed:
                del self._watchers[name]
        for name in removed:
            logger.info(f"Stopped watching {name}")

        return added, removed

    def drop_scope(self, scope: Scope) -> List[str]:
        """Remove every watcher of the given scope"""
        with self._lock:
            removed = [name for name, watcher in self._watchers.items() if watcher.scope == scope]
            for name in removed:
                del self._watchers[name]
        if removed:
            logger.info(f"Dropped {len(removed)} {scope.value} watcher(s)")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._watchers.clear()

    @staticmethod
    def current_max_id(reader: StoreReader, table_name: str) -> Union[int, float]:
        """
        Get a table's maximum id, 0 when empty, non-numeric or unreadable

        Raises:
            StoreUnavailableError: If the store handle itself failed
        """
        try:
            value = reader.get_max_value(table_name, "id")
        except StoreUnavailableError:
            raise
        except CDCError as e:
            logger.error(f"Failed to fetch MAX(id) from {table_name}: {e}")
            return 0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return value
