"""Base classes and interfaces for polling change capture"""

import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from ..exceptions import (
    CDCError,
    QueryError,
    StoreUnavailableError,
    SubscriberDeliveryError,
    SubscriptionSetupError,
    TableMissingError,
)


class Scope(Enum):
    """Broad category of data a watched table holds"""
    FEED = "feed"  # per-user activity feed
    GAMELOG = "gamelog"  # global game activity log


@dataclass(frozen=True)
class WatchTarget:
    """A table the resolver reports as currently eligible for watching"""
    scope: Scope
    subtype: str
    table_name: str


@dataclass
class WatchedTable:
    """
    Watch state for one table

    The high-water mark is the largest row identifier already emitted.
    It is seeded with the table's maximum identifier when watching starts,
    so rows that existed before that moment are never reported as new.
    """
    scope: Scope
    subtype: str
    table_name: str
    high_water_mark: Union[int, float] = 0

    def advance(self, row_id: Any) -> bool:
        """
        Move the high-water mark forward

        Only numeric identifiers count. Text identifiers are never accepted:
        SQLite orders every text value above every number, so such a row would
        come back as "newer" on every poll.

        Args:
            row_id: Identifier of a row about to be delivered

        Returns:
            True if the mark moved, False if the value was unusable or not newer
        """
        if isinstance(row_id, bool) or not isinstance(row_id, (int, float)):
            return False
        if row_id <= self.high_water_mark:
            return False
        self.high_water_mark = row_id
        return True


@dataclass(frozen=True)
class ChangeEvent:
    """One newly observed row of a watched table"""
    scope: Scope
    subtype: str
    table: str
    record: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"ChangeEvent({self.scope.value}/{self.subtype} id={self.row_id} on {self.table})"

    @property
    def row_id(self) -> Optional[Any]:
        return self.record.get("id")

    def to_message(self) -> Dict[str, Any]:
        """Get the outbound wire shape for this event"""
        return {
            "event": "record",
            "scope": self.scope.value,
            "type": self.subtype,
            "record": self.record,
        }


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return str(value)


def serialize_message(payload: Any) -> str:
    """Serialize an outbound message; store BLOBs become base64 text"""
    return json.dumps(payload, default=_json_default, ensure_ascii=False)


class Subscriber(ABC):
    """
    One connected consumer owned by the fan-out hub

    Implementations wrap a transport. ``send`` must either hand the message
    to the transport or raise ``SubscriberDeliveryError``; it must never block
    waiting for a slow consumer.
    """

    @abstractmethod
    def send(self, message: str) -> None:
        """
        Deliver one serialized message

        Args:
            message: JSON text to deliver

        Raises:
            SubscriberDeliveryError: If the transport failed or its buffer is full
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the underlying transport once pending output is flushed"""
        pass


class CDCListener(ABC):
    """
    Abstract base class for change sources

    A listener detects changes in the store and hands each one to a callback.
    """

    def __init__(self):
        self.is_running = False

    @abstractmethod
    def start_streaming(self, callback: Optional[Callable[[ChangeEvent], None]] = None) -> None:
        """
        Start detecting changes

        Args:
            callback: Function to call for each change event
        """
        pass

    @abstractmethod
    def stop_streaming(self) -> None:
        """Stop detecting changes and release store resources"""
        pass

    @abstractmethod
    def get_status(self) -> Dict[str, Any]:
        """
        Get current status of the listener

        Returns:
            Status information including watched tables and counters
        """
        pass


class CDCHandler(ABC):
    """Abstract base class for consumers of change events"""

    @abstractmethod
    def handle_change(self, event: ChangeEvent) -> None:
        """
        Process a change event

        Args:
            event: Change event to process
        """
        pass

    def can_handle(self, event: ChangeEvent) -> bool:
        """
        Check if this handler can process the given event

        Args:
            event: Change event to check

        Returns:
            True if this handler can process the event
        """
        return True
