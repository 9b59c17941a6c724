from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from pydantic import ValidationError
from typing import Optional
import asyncio
import os

from backend import PersistenceUnavailable, get_chat_store
from constants import CORS_ORIGINS, ROOM_IDLE_TIMEOUT, ROOM_SWEEP_INTERVAL
from hub import SignalingHub
from logging_config import get_logger, setup_logging
from routers.rooms import rooms_router
from schemas.messages import parse_client_message

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(hub: Optional[SignalingHub] = None) -> FastAPI:
    hub = hub or SignalingHub(chat_store=get_chat_store(), idle_timeout=ROOM_IDLE_TIMEOUT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if hub.chat_store is not None:
            try:
                await asyncio.get_running_loop().run_in_executor(None, hub.chat_store.ping)
                logger.info("Chat history store reachable")
            except PersistenceUnavailable as e:
                logger.warning(f"Chat history store unreachable, history will be skipped until it recovers: {e}")
        sweeper = None
        if hub.idle_timeout:
            sweeper = asyncio.create_task(hub.run_idle_sweeper(ROOM_SWEEP_INTERVAL))
        yield
        if sweeper:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="CallMesh signaling", lifespan=lifespan)
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling socket. One connection is one participant in at most one room."""
        await websocket.accept()
        conn = hub.connect(websocket)
        message_count = 0
        try:
            while True:
                data = await websocket.receive_text()
                message_count += 1
                try:
                    message = parse_client_message(data)
                except ValidationError as e:
                    logger.warning(f"Invalid message #{message_count} from connection {conn.id}: {e.errors()[:1]}")
                    await hub.send_error(conn, "Invalid message")
                    continue
                logger.debug(f"Received {message.type} (#{message_count}) from connection {conn.id}")
                await hub.handle(conn, message)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {conn.id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {conn.id}: {e}", exc_info=True)
        finally:
            await hub.disconnect(conn)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
