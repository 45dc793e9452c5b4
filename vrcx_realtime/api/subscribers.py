"""WebSocket-backed subscribers"""

import asyncio
import threading
from typing import Optional

from fastapi import WebSocket
from loguru import logger
from starlette.websockets import WebSocketDisconnect, WebSocketState

from ..cdc.base import Subscriber, SubscriberDeliveryError


GOING_AWAY = 1001


class WebSocketSubscriber(Subscriber):
    """
    Subscriber that hands messages to a WebSocket's event loop

    ``send`` is called from the poll thread. It only enqueues onto the loop
    and never waits for the client; once ``max_pending`` messages are queued
    and unsent, further sends fail and the hub drops this subscriber.
    ``run_writer`` drains the queue onto the socket in order.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop, max_pending: int = 256):
        self.websocket = websocket
        self.max_pending = max_pending
        self._loop = loop
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._pending = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def send(self, message: str) -> None:
        with self._lock:
            if self._closed:
                raise SubscriberDeliveryError("subscriber is closed")
            if self._pending >= self.max_pending:
                raise SubscriberDeliveryError(f"outbound buffer full ({self.max_pending} messages)")
            self._pending += 1

        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, message)
        except RuntimeError as e:
            with self._lock:
                self._pending -= 1
            raise SubscriberDeliveryError(f"event loop unavailable: {e}") from e

    def close(self) -> None:
        """Stop accepting messages; the writer closes the socket after draining"""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        except RuntimeError as e:
            logger.debug(f"Event loop already stopped while closing subscriber: {e}")

    async def next_message(self) -> Optional[str]:
        """Wait for the next queued message, None once closed and drained"""
        message = await self._queue.get()
        if message is not None:
            with self._lock:
                self._pending -= 1
        return message

    async def run_writer(self) -> None:
        """Write queued messages to the socket until closed"""
        try:
            while True:
                message = await self.next_message()
                if message is None:
                    break
                await self.websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"WebSocket writer stopped: {e}")
            with self._lock:
                self._closed = True
            return

        if self.websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=GOING_AWAY)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug(f"WebSocket already closed: {e}")
