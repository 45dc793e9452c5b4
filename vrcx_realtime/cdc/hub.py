"""Fan-out of change events to connected subscribers"""

import threading
from typing import Any, Dict, List, Union

from loguru import logger

from .base import CDCHandler, ChangeEvent, Subscriber, SubscriberDeliveryError, serialize_message


class FanoutHub(CDCHandler):
    """
    Delivers every change event to every connected subscriber

    Each broadcast iterates over a copy of the subscriber set taken under the
    lock, so subscribers may join or leave at any time, including from inside
    their own ``send``. A subscriber removed while a broadcast is in progress
    is not delivered to for the rest of that broadcast.

    A subscriber whose ``send`` fails is removed and closed; the others are
    unaffected.
    """

    def __init__(self):
        # dict keeps registration order for deterministic delivery
        self._subscribers: Dict[Subscriber, None] = {}
        self._lock = threading.Lock()
        self.metrics = {
            'messages_broadcast': 0,
            'deliveries': 0,
            'delivery_failures': 0,
        }

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def add_subscriber(self, subscriber: Subscriber) -> None:
        """Register a subscriber; registering twice has no effect"""
        with self._lock:
            self._subscribers[subscriber] = None
            count = len(self._subscribers)
        logger.info(f"Subscriber connected ({count} total)")

    def remove_subscriber(self, subscriber: Subscriber) -> bool:
        """
        Unregister a subscriber

        Returns:
            True if it was registered
        """
        with self._lock:
            removed = subscriber in self._subscribers
            self._subscribers.pop(subscriber, None)
            count = len(self._subscribers)
        if removed:
            logger.info(f"Subscriber disconnected ({count} total)")
        return removed

    def is_subscribed(self, subscriber: Subscriber) -> bool:
        with self._lock:
            return subscriber in self._subscribers

    def handle_change(self, event: ChangeEvent) -> None:
        """Broadcast a change event from the poller"""
        self.broadcast(event)

    def broadcast(self, payload: Union[ChangeEvent, Dict[str, Any]]) -> int:
        """
        Deliver one message to all current subscribers

        Args:
            payload: Change event or already-shaped message

        Returns:
            Number of subscribers the message was handed to
        """
        message = payload.to_message() if isinstance(payload, ChangeEvent) else payload
        text = serialize_message(message)

        with self._lock:
            targets: List[Subscriber] = list(self._subscribers)

        delivered = 0
        failed = 0
        for subscriber in targets:
            if not self.is_subscribed(subscriber):
                continue
            try:
                subscriber.send(text)
                delivered += 1
            except SubscriberDeliveryError as e:
                logger.warning(f"Dropping subscriber after failed delivery: {e}")
                failed += 1
                self._drop(subscriber)
            except Exception as e:
                logger.error(f"Unexpected error delivering to subscriber: {e}")
                failed += 1
                self._drop(subscriber)

        with self._lock:
            self.metrics['messages_broadcast'] += 1
            self.metrics['deliveries'] += delivered
            self.metrics['delivery_failures'] += failed
        return delivered

    def _drop(self, subscriber: Subscriber) -> None:
        self.remove_subscriber(subscriber)
        try:
            subscriber.close()
        except Exception as e:
            logger.error(f"Error closing failed subscriber: {e}")

    def close_all(self) -> None:
        """Close every subscriber and empty the hub"""
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()

        for subscriber in subscribers:
            try:
                subscriber.close()
            except Exception as e:
                logger.error(f"Error closing subscriber: {e}")

        logger.info(f"Closed {len(subscribers)} subscriber(s)")

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'subscribers': len(self._subscribers),
                'metrics': self.metrics.copy(),
            }
