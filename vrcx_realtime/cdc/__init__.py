"""Polling change capture and fan-out for the VRCX SQLite database"""

from .base import (
    CDCError,
    CDCHandler,
    CDCListener,
    ChangeEvent,
    QueryError,
    Scope,
    StoreUnavailableError,
    Subscriber,
    SubscriberDeliveryError,
    SubscriptionSetupError,
    TableMissingError,
    WatchedTable,
    WatchTarget,
)
from .hub import FanoutHub
from .poller import Poller
from .snapshot import FingerprintStrategy, SnapshotAdapter, SnapshotChannel, compute_snapshot, parse_limit
from .tables import TableResolver, sanitize
from .watchers import WatcherSet

__all__ = [
    "CDCError",
    "CDCHandler",
    "CDCListener",
    "ChangeEvent",
    "FanoutHub",
    "FingerprintStrategy",
    "Poller",
    "QueryError",
    "Scope",
    "SnapshotAdapter",
    "SnapshotChannel",
    "StoreUnavailableError",
    "Subscriber",
    "SubscriberDeliveryError",
    "SubscriptionSetupError",
    "TableMissingError",
    "TableResolver",
    "WatchedTable",
    "WatchTarget",
    "WatcherSet",
    "compute_snapshot",
    "parse_limit",
    "sanitize",
]
