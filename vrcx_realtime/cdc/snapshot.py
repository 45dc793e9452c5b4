"""Full-snapshot consumption mode with change fingerprinting"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
from loguru import logger

from ..connectors.base import StoreReader
from .base import (
    CDCError,
    Scope,
    SubscriptionSetupError,
    TableMissingError,
    WatchTarget,
    serialize_message,
)
from .tables import feed_targets, gamelog_targets, sanitize


DEFAULT_LIMIT = 1000
MAX_LIMIT = 1000


class FingerprintStrategy(Enum):
    """How a snapshot is summarised to detect 'nothing changed'"""
    HASH = "hash"  # sha256 of the serialized message
    TIMESTAMP = "timestamp"  # newest created_at across all rows


def parse_limit(value: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """
    Parse a requested result size

    Args:
        value: Raw value from the request, possibly absent
        default: Used when the value is absent, non-numeric or not positive
        maximum: Upper bound applied to any accepted value

    Returns:
        A limit between 1 and maximum
    """
    try:
        parsed = int(str(value).strip()) if value is not None else default
    except ValueError:
        parsed = default
    if parsed <= 0:
        parsed = default
    return min(parsed, maximum)


@dataclass(frozen=True)
class SnapshotChannel:
    """A logical stream of snapshots: one user's feed, or the game log"""
    name: str
    targets: Tuple[WatchTarget, ...]
    entity_id: Optional[str] = None

    @classmethod
    def feed(cls, entity_id: Optional[str]) -> "SnapshotChannel":
        """
        Build the feed channel for a user

        Raises:
            SubscriptionSetupError: If the user id is missing or unusable
        """
        if not entity_id:
            raise SubscriptionSetupError("userId is required")
        token = sanitize(entity_id)
        if token is None:
            raise SubscriptionSetupError("userId is not a valid user id")
        return cls(Scope.FEED.value, tuple(feed_targets(token)), entity_id)

    @classmethod
    def gamelog(cls) -> "SnapshotChannel":
        return cls(Scope.GAMELOG.value, tuple(gamelog_targets()))

    @classmethod
    def from_request(cls, channel: Optional[str], entity_id: Optional[str] = None) -> "SnapshotChannel":
        """
        Build a channel from subscription parameters

        Raises:
            SubscriptionSetupError: If the channel name or its parameters are invalid
        """
        if channel == Scope.FEED.value:
            return cls.feed(entity_id)
        if channel == Scope.GAMELOG.value:
            return cls.gamelog()
        raise SubscriptionSetupError('channel must be "feed" or "gamelog"')


def compute_snapshot(reader: StoreReader, channel: SnapshotChannel, limit: int = DEFAULT_LIMIT) -> Dict[str, List[Dict[str, Any]]]:
    """
    Read the most recent rows of every table in a channel

    A table that does not exist (yet) contributes an empty list. Any other
    failure propagates.

    Args:
        reader: Open store reader
        channel: Channel to read
        limit: Rows per table, clamped to MAX_LIMIT

    Returns:
        Rows grouped by subtype, newest first
    """
    limit = parse_limit(limit)
    snapshot: Dict[str, List[Dict[str, Any]]] = {}
    for target in channel.targets:
        if not reader.table_exists(target.table_name):
            snapshot[target.subtype] = []
            continue
        try:
            snapshot[target.subtype] = reader.get_latest_rows(target.table_name, limit)
        except TableMissingError:
            snapshot[target.subtype] = []
    return snapshot


def latest_timestamp(snapshot: Dict[str, List[Dict[str, Any]]]) -> Optional[str]:
    """Get the newest created_at across a snapshot, ISO formatted"""
    newest = None
    for rows in snapshot.values():
        for row in rows:
            value = row.get("created_at")
            if value is None or value == "":
                continue
            try:
                parsed = date_parser.parse(str(value))
            except (ValueError, OverflowError):
                continue
            if parsed.tzinfo is not None:
                parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
            if newest is None or parsed > newest:
                newest = parsed
    return newest.isoformat() if newest else None


def fingerprint(message: Dict[str, Any], strategy: FingerprintStrategy = FingerprintStrategy.HASH) -> Optional[str]:
    """Summarise a snapshot message"""
    if strategy == FingerprintStrategy.TIMESTAMP:
        return latest_timestamp(message.get("data", {}))
    return hashlib.sha256(serialize_message(message).encode("utf-8")).hexdigest()


@dataclass
class SnapshotDecision:
    """Outcome of one snapshot check"""
    send: bool
    message: Optional[Dict[str, Any]] = None
    fingerprint: Optional[str] = None
    error: Optional[str] = None


class SnapshotAdapter:
    """
    Serves full snapshots of one channel, suppressing unchanged ones

    State is per subscription: the fingerprint of the last snapshot that was
    actually delivered, and the last error reported. ``next_message`` decides
    what (if anything) to send; ``acknowledge`` records a successful delivery.
    Nothing is recorded for a decision that was never acknowledged, so a
    failed send is retried on the next check.

    Errors are reported once per distinct message. A snapshot delivered after
    an error clears the suppression, and an error forgets the last
    fingerprint so the next good snapshot is always sent.
    """

    def __init__(
        self,
        channel: SnapshotChannel,
        reader_factory: Callable[[], StoreReader],
        limit: int = DEFAULT_LIMIT,
        strategy: FingerprintStrategy = FingerprintStrategy.HASH
    ):
        self.channel = channel
        self.reader_factory = reader_factory
        self.limit = parse_limit(limit)
        self.strategy = strategy

        self.last_fingerprint: Optional[str] = None
        self.last_payload: Optional[str] = None
        self.last_error: Optional[str] = None
        self.has_sent = False

    def compute_snapshot(self) -> Dict[str, Any]:
        """Read the channel and build its outbound message"""
        with self.reader_factory() as reader:
            data = compute_snapshot(reader, self.channel, self.limit)
        return {"type": self.channel.name, "data": data}

    def next_message(self) -> SnapshotDecision:
        """Check the store and decide whether a message should be sent"""
        try:
            message = self.compute_snapshot()
        except CDCError as e:
            error = f"Failed to read {self.channel.name} data: {e}"
            logger.error(error)
            if error == self.last_error:
                return SnapshotDecision(send=False, error=error)
            return SnapshotDecision(
                send=True,
                message={"type": "error", "message": error},
                error=error,
            )

        current = fingerprint(message, self.strategy)
        if self.has_sent and self.last_error is None and current == self.last_fingerprint:
            return SnapshotDecision(send=False, fingerprint=current)
        return SnapshotDecision(send=True, message=message, fingerprint=current)

    def acknowledge(self, decision: SnapshotDecision) -> None:
        """Record that a decision's message was delivered"""
        if not decision.send:
            return
        if decision.error is not None:
            self.last_error = decision.error
            self.last_fingerprint = None
            self.last_payload = None
            self.has_sent = False
            return
        self.last_error = None
        self.last_fingerprint = decision.fingerprint
        self.last_payload = serialize_message(decision.message)
        self.has_sent = True
