"""Polling change capture for the VRCX SQLite database"""

import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..connectors.base import StoreReader
from .base import (
    CDCListener,
    ChangeEvent,
    Scope,
    StoreUnavailableError,
    TableMissingError,
    QueryError,
)
from .tables import TableResolver
from .watchers import WatcherSet


DEFAULT_BATCH_SIZE = 1000


class Poller(CDCListener):
    """
    Detects newly appended rows by polling with per-table id watermarks

    The store offers no change notifications and may be written by its owner
    at any time, so each tick:

    - re-reads the active user and reconciles the watcher set with the
      tables that currently exist
    - for every watched table, fetches up to ``batch_size`` rows with ``id``
      above the table's high-water mark, advances the mark and emits one
      event per row, oldest first; a larger backlog drains over later ticks

    A handle that fails as a whole, or whose file was replaced, is closed and
    reopened on a later tick. Ticks never overlap. When a tick runs past the
    next due time, the missed ticks are skipped rather than queued.

    Rows written to a table while it is not watched (for example while a
    different user is active) are never delivered once watching resumes.
    """

    def __init__(
        self,
        reader_factory: Callable[[], StoreReader],
        resolver: Optional[TableResolver] = None,
        poll_interval: float = 1.0,
        on_event: Optional[Callable[[ChangeEvent], None]] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """
        Initialize the poller

        Args:
            reader_factory: Creates an unopened read-only store reader
            resolver: Table resolver (defaults to the VRCX layout)
            poll_interval: Seconds between ticks
            on_event: Function to call for each change event
            batch_size: Maximum rows fetched per table per tick
        """
        super().__init__()
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.reader_factory = reader_factory
        self.resolver = resolver or TableResolver()
        self.poll_interval = poll_interval
        self.callback = on_event
        self.batch_size = batch_size

        self.watchers = WatcherSet()
        self.current_entity: Optional[str] = None
        self.reader: Optional[StoreReader] = None
        self._store_available = True

        self._tick_lock = threading.Lock()
        self.poll_thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()

        self.metrics = {
            'ticks': 0,
            'ticks_skipped': 0,
            'events_emitted': 0,
            'table_errors': 0,
            'rows_skipped': 0,
            'last_tick_time': None,
        }
        self.metrics_lock = threading.Lock()

    def start_streaming(self, callback: Optional[Callable[[ChangeEvent], None]] = None) -> None:
        """Start the poll thread"""
        if self.is_running:
            logger.warning("Realtime polling already running")
            return

        if callback is not None:
            self.callback = callback

        self.is_running = True
        self.stop_event.clear()
        self.poll_thread = threading.Thread(
            target=self._poll_loop,
            name="vrcx-poller",
            daemon=True
        )
        self.poll_thread.start()
        logger.info(f"Started realtime polling every {self.poll_interval}s")

    def stop_streaming(self) -> None:
        """Stop the poll thread and close the store handle"""
        if self.is_running:
            logger.info("Stopping realtime polling")
            self.stop_event.set()
            self.is_running = False
            if self.poll_thread:
                self.poll_thread.join()
                self.poll_thread = None

        with self._tick_lock:
            self._close_reader()
            self.watchers.clear()
            self.current_entity = None

    def _poll_loop(self) -> None:
        """Run ticks at a fixed rate until stopped (runs in separate thread)"""
        next_due = time.monotonic()
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Realtime polling error: {e}")

            next_due += self.poll_interval
            now = time.monotonic()
            if now > next_due:
                missed = int((now - next_due) // self.poll_interval) + 1
                next_due += missed * self.poll_interval
                with self.metrics_lock:
                    self.metrics['ticks_skipped'] += missed
                logger.debug(f"Poll overran its interval, skipped {missed} tick(s)")
            self.stop_event.wait(max(0.0, next_due - now))

    def tick(self) -> Optional[List[ChangeEvent]]:
        """
        Run one poll cycle

        Returns:
            Events emitted by this tick, or None if another tick was still
            running and this one was skipped
        """
        if not self._tick_lock.acquire(blocking=False):
            with self.metrics_lock:
                self.metrics['ticks_skipped'] += 1
            logger.debug("Previous poll still running, skipping tick")
            return None

        try:
            reader = self._ensure_reader()
            if reader is None:
                return []

            try:
                self.refresh_watchers(reader)
                events = self.poll_updates(reader)
            except StoreUnavailableError as e:
                logger.warning(f"Store handle failed, will reopen: {e}")
                self._store_available = False
                self._close_reader()
                return []

            with self.metrics_lock:
                self.metrics['ticks'] += 1
                self.metrics['last_tick_time'] = datetime.now()
            return events
        finally:
            self._tick_lock.release()

    def refresh_watchers(self, reader: StoreReader) -> None:
        """Re-resolve the active user and reconcile the watcher set"""
        entity = self.resolver.resolve_active_entity(reader)
        if entity != self.current_entity:
            logger.info(f"Active user changed: {self.current_entity} -> {entity}")
            self.current_entity = entity
            self.watchers.drop_scope(Scope.FEED)

        targets = self.resolver.resolve_watch_targets(reader, entity)
        self.watchers.reconcile(reader, targets)

    def poll_updates(self, reader: StoreReader) -> List[ChangeEvent]:
        """
        Fetch and emit rows newer than each watcher's high-water mark

        A failing table is logged and skipped for this tick only. A row is
        emitted only if its id moves the mark forward; rows with a non-numeric
        id are skipped so they can never be delivered twice.

        Args:
            reader: Open store reader

        Returns:
            Emitted events, ascending by id within each table

        Raises:
            StoreUnavailableError: If the store handle itself failed
        """
        emitted: List[ChangeEvent] = []

        for watcher in self.watchers:
            try:
                rows = reader.get_rows_after(watcher.table_name, watcher.high_water_mark, self.batch_size)
            except TableMissingError:
                logger.warning(f"Table disappeared while watched: {watcher.table_name}")
                self._count_table_error()
                continue
            except QueryError as e:
                logger.error(f"Failed to fetch incremental records from {watcher.table_name}: {e}")
                self._count_table_error()
                continue

            events = []
            skipped = 0
            for row in rows:
                if not watcher.advance(row.get("id")):
                    skipped += 1
                    continue
                events.append(ChangeEvent(
                    scope=watcher.scope,
                    subtype=watcher.subtype,
                    table=watcher.table_name,
                    record=row,
                ))

            if skipped:
                logger.debug(f"Skipped {skipped} row(s) of {watcher.table_name} with ids at or below mark {watcher.high_water_mark}")
                with self.metrics_lock:
                    self.metrics['rows_skipped'] += skipped
            if not events:
                continue

            logger.debug(f"{len(events)} new row(s) in {watcher.table_name}, mark now {watcher.high_water_mark}")
            self._emit(events)
            emitted.extend(events)

        return emitted

    def _emit(self, events: List[ChangeEvent]) -> None:
        with self.metrics_lock:
            self.metrics['events_emitted'] += len(events)

        if self.callback is None:
            return

        for event in events:
            try:
                self.callback(event)
            except Exception as e:
                logger.error(f"Realtime listener error for {event}: {e}")

    def _count_table_error(self) -> None:
        with self.metrics_lock:
            self.metrics['table_errors'] += 1

    def _ensure_reader(self) -> Optional[StoreReader]:
        if self.reader is not None and self.reader.is_connected:
            if not self.reader.is_stale():
                return self.reader
            # Marks belong to the old file; reseed against the new one
            logger.warning("Store file was replaced or removed, reopening")
            self._close_reader()
            self.watchers.clear()
            self.current_entity = None

        reader = self.reader_factory()
        try:
            reader.connect()
        except StoreUnavailableError as e:
            if self._store_available:
                logger.warning(f"Store unavailable, will retry: {e}")
            self._store_available = False
            return None

        if not self._store_available:
            logger.info("Store available again")
        self._store_available = True
        self.reader = reader
        return reader

    def _close_reader(self) -> None:
        if self.reader is not None:
            self.reader.disconnect()
            self.reader = None

    def get_status(self) -> Dict[str, Any]:
        """Get current poller status"""
        with self.metrics_lock:
            metrics = self.metrics.copy()

        return {
            'is_running': self.is_running,
            'poll_interval': self.poll_interval,
            'batch_size': self.batch_size,
            'store_available': self._store_available,
            'active_entity': self.current_entity,
            'watchers': [
                {
                    'table': watcher.table_name,
                    'scope': watcher.scope.value,
                    'type': watcher.subtype,
                    'high_water_mark': watcher.high_water_mark,
                }
                for watcher in self.watchers
            ],
            'metrics': metrics,
        }
