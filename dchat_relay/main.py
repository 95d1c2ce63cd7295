"""
FastAPI relay peer for the end-to-end encrypted chat.

A relay peer is untrusted infrastructure:
- Stores graph nodes (public keys, wrapped private keys, chat links, and
  ciphertext messages) with last-write-wins semantics
- Serves one-shot reads over REST
- Streams the children of subscribed paths over WebSocket
It never sees plaintext and performs no authentication.
"""

import json
import logging
from typing import Any, Dict, Optional, Set
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .config import RelaySettings
from .database import GraphStore


logger = logging.getLogger(__name__)


class PutRequest(BaseModel):
    path: str
    value: Any


class SubscriptionHub:
    """Tracks which WebSockets are subscribed to which paths"""

    def __init__(self):
        self.subscribers: Dict[str, Set[WebSocket]] = {}

    def subscribe(self, path: str, websocket: WebSocket):
        self.subscribers.setdefault(path, set()).add(websocket)

    def unsubscribe(self, path: str, websocket: WebSocket):
        sockets = self.subscribers.get(path)
        if sockets:
            sockets.discard(websocket)
            if not sockets:
                del self.subscribers[path]

    def drop(self, websocket: WebSocket):
        """Remove a WebSocket from every path"""
        for path in list(self.subscribers):
            self.unsubscribe(path, websocket)

    async def publish(self, parent: str, key: str, value: Any):
        """Send a new or updated child to the parent's subscribers"""
        frame = {"type": "entry", "path": parent, "key": key, "value": value}
        for websocket in list(self.subscribers.get(parent, ())):
            try:
                await websocket.send_json(frame)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug("Dropping subscriber on %s: %s", parent, e)
                self.drop(websocket)


def create_app(settings: Optional[RelaySettings] = None) -> FastAPI:
    """
    Build a relay application.

    Args:
        settings: Relay settings; loaded from the environment if omitted
    """
    settings = settings or RelaySettings()
    store = GraphStore(settings.database_url)
    hub = SubscriptionHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await store.create_tables()
        logger.info("Graph store initialized at %s", settings.database_url)
        yield
        await store.dispose()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Encrypted Chat Relay",
        description="Untrusted relay peer hosting the replicated chat graph",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.hub = hub

    async def write(path: str, value: Any):
        try:
            parent, key = await store.put(path, value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        await hub.publish(parent, key, value)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.put("/api/graph")
    async def put_node(request: PutRequest):
        """Write a value at a path (last write wins)"""
        await write(request.path, request.value)
        return {"status": "ok"}

    @app.get("/api/graph/{path:path}")
    async def get_node(path: str):
        """Read a leaf value or the children of a node"""
        value = await store.get(path)
        if value is None:
            raise HTTPException(status_code=404, detail="Not found")
        return {"path": path, "value": value}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for subscriptions.

        Protocol:
        1. Client sends: {"type": "subscribe", "path": "chat/alice:bob"}
        2. Server replays existing children, then streams new ones:
           {"type": "entry", "path": "...", "key": "...", "value": ...}
        3. Client sends: {"type": "unsubscribe", "path": "..."}
        4. Client may also write: {"type": "put", "path": "...", "value": ...}
        """
        await websocket.accept()

        try:
            while True:
                try:
                    data = json.loads(await websocket.receive_text())
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    await websocket.send_json({"type": "error", "message": "Malformed frame"})
                    continue

                kind = data.get("type")
                path = data.get("path")
                path = path.strip("/") if isinstance(path, str) else ""

                if kind == "subscribe" and path:
                    hub.subscribe(path, websocket)
                    for key, value in await store.children(path):
                        await websocket.send_json(
                            {"type": "entry", "path": path, "key": key, "value": value}
                        )
                elif kind == "unsubscribe" and path:
                    hub.unsubscribe(path, websocket)
                elif kind == "put" and path:
                    try:
                        await write(path, data.get("value"))
                    except HTTPException as e:
                        await websocket.send_json({"type": "error", "message": e.detail})
                elif kind == "ping":
                    await websocket.send_json({"type": "pong"})
                else:
                    await websocket.send_json({"type": "error", "message": "Invalid frame"})

        except WebSocketDisconnect:
            pass
        finally:
            hub.drop(websocket)

    return app


app = create_app()


def run():
    import uvicorn

    settings = RelaySettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
