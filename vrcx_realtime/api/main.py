"""FastAPI application serving realtime VRCX database updates"""

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect, WebSocketState

from ..cdc.base import CDCError, StoreUnavailableError, SubscriberDeliveryError, SubscriptionSetupError, serialize_message
from ..cdc.hub import FanoutHub
from ..cdc.poller import Poller
from ..cdc.snapshot import FingerprintStrategy, SnapshotAdapter, SnapshotChannel, parse_limit
from ..cdc.tables import TableResolver
from ..config.settings import Settings, get_settings
from ..connectors.sqlite import SQLiteReader
from .subscribers import GOING_AWAY, WebSocketSubscriber


SETUP_ERROR_CLOSE_CODE = 1008  # policy violation: bad subscription parameters


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def handle_control_message(hub: FanoutHub, subscriber: WebSocketSubscriber, text: str) -> None:
    """
    Act on one inbound message from a delta-channel client

    Malformed or unknown messages are logged and ignored.
    """
    try:
        message = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Error parsing WebSocket message: {e}")
        return

    if not isinstance(message, dict):
        logger.warning(f"Ignoring non-object WebSocket message: {text[:100]}")
        return

    message_type = message.get("type")
    if message_type == "ping":
        try:
            subscriber.send(serialize_message({"type": "pong"}))
        except SubscriberDeliveryError as e:
            logger.warning(f"Could not answer ping: {e}")
    elif message_type == "subscribe":
        hub.add_subscriber(subscriber)
    elif message_type == "unsubscribe":
        hub.remove_subscriber(subscriber)
    else:
        logger.warning(f"Unknown WebSocket message type: {message_type!r}")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application

    Args:
        settings: Settings to use instead of the environment

    Returns:
        Configured FastAPI app; the poller starts with the app's lifespan
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    def reader_factory() -> SQLiteReader:
        return SQLiteReader(settings.database_path, timeout=settings.query_timeout)

    hub = FanoutHub()
    poller = Poller(
        reader_factory,
        resolver=TableResolver(settings.active_entity_key),
        poll_interval=settings.poll_interval,
        on_event=hub.handle_change,
        batch_size=settings.poll_batch_size,
    )
    connections: Set[WebSocketSubscriber] = set()
    writers: Set[asyncio.Task] = set()
    shutdown = asyncio.Event()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Watching VRCX database at {settings.database_path}")
        if settings.cdc_enabled:
            poller.start_streaming()
        yield
        shutdown.set()
        await run_in_threadpool(poller.stop_streaming)
        hub.close_all()
        # Clients that unsubscribed are no longer in the hub
        for subscriber in list(connections):
            subscriber.close()
        if writers:
            await asyncio.wait(set(writers), timeout=5)
        logger.info("Realtime service stopped")

    app = FastAPI(
        title="VRCX Realtime API",
        description="Streams newly written VRCX database rows to WebSocket clients",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.hub = hub
    app.state.poller = poller
    app.state.reader_factory = reader_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    @app.get("/cdc/status")
    async def get_cdc_status():
        """Get poller and subscriber status"""
        return {
            "status": "success",
            "poller": poller.get_status(),
            "hub": hub.get_status(),
        }

    @app.get("/api/tables")
    def list_tables() -> List[Dict[str, Any]]:
        """List every table in the database with its row count"""
        try:
            with reader_factory() as reader:
                result = []
                for name in reader.get_tables():
                    try:
                        count = reader.get_row_count(name)
                    except CDCError as e:
                        logger.warning(f"Failed to count records for table {name}: {e}")
                        count = 0
                    result.append({"name": name, "count": count})
                return result
        except StoreUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except CDCError as e:
            logger.error(f"Error listing tables: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/tables/{table_name}")
    def get_records(table_name: str, page: int = 1, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get a page of a table's rows, most recent first

        Only names present in the database catalog are queried.
        """
        if page < 1 or limit < 1:
            raise HTTPException(status_code=400, detail="Invalid page or limit")
        limit = min(limit, settings.snapshot_max_limit)

        try:
            with reader_factory() as reader:
                if table_name not in reader.get_tables():
                    raise HTTPException(status_code=404, detail="Table not found")
                rows = reader.get_latest_rows(table_name, limit, (page - 1) * limit, order_by="rowid")
        except StoreUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except CDCError as e:
            logger.error(f"Error reading table {table_name}: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return json.loads(serialize_message(rows))

    @app.websocket("/ws")
    async def realtime_records(websocket: WebSocket):
        """Stream one message per newly written row to the client"""
        subscriber = WebSocketSubscriber(
            websocket,
            asyncio.get_running_loop(),
            max_pending=settings.subscriber_buffer_size,
        )
        connections.add(subscriber)
        hub.add_subscriber(subscriber)
        await websocket.accept()

        writer = asyncio.create_task(subscriber.run_writer())
        writers.add(writer)
        try:
            while True:
                text = await websocket.receive_text()
                handle_control_message(hub, subscriber, text)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        except RuntimeError as e:
            logger.debug(f"WebSocket receive loop ended: {e}")
        finally:
            hub.remove_subscriber(subscriber)
            connections.discard(subscriber)
            subscriber.close()
            await writer
            writers.discard(writer)

    @app.websocket("/ws/realtime")
    async def realtime_snapshots(
        websocket: WebSocket,
        channel: Optional[str] = Query(None),
        user_id: Optional[str] = Query(None, alias="userId"),
        limit: Optional[str] = Query(None),
    ):
        """Push the latest rows of a channel whenever they change"""
        await websocket.accept()

        try:
            snapshot_channel = SnapshotChannel.from_request(channel, user_id)
        except SubscriptionSetupError as e:
            logger.warning(f"Rejected realtime subscription: {e}")
            await websocket.send_text(serialize_message({"type": "error", "message": str(e)}))
            await websocket.close(code=SETUP_ERROR_CLOSE_CODE, reason=str(e))
            return

        adapter = SnapshotAdapter(
            snapshot_channel,
            reader_factory,
            limit=parse_limit(limit, settings.snapshot_default_limit, settings.snapshot_max_limit),
            strategy=FingerprintStrategy(settings.snapshot_fingerprint),
        )
        send_lock = asyncio.Lock()
        sender = asyncio.create_task(_stream_snapshots(websocket, adapter, send_lock))
        writers.add(sender)

        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.warning(f"Error parsing WebSocket message: {e}")
                    continue
                if isinstance(message, dict) and message.get("type") == "ping":
                    async with send_lock:
                        await websocket.send_text(serialize_message({"type": "pong"}))
        except WebSocketDisconnect:
            logger.info(f"Realtime {snapshot_channel.name} client disconnected")
        except RuntimeError as e:
            logger.debug(f"Realtime receive loop ended: {e}")
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            writers.discard(sender)

    async def _stream_snapshots(websocket: WebSocket, adapter: SnapshotAdapter, send_lock: asyncio.Lock) -> None:
        while not shutdown.is_set():
            decision = await run_in_threadpool(adapter.next_message)
            if decision.send:
                async with send_lock:
                    await websocket.send_text(serialize_message(decision.message))
                adapter.acknowledge(decision)

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=settings.snapshot_interval)
            except asyncio.TimeoutError:
                continue

        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=GOING_AWAY)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug(f"WebSocket already closed: {e}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run("vrcx_realtime.api.main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_reload)
