"""
Replicated graph store boundary.

The chat client treats the store as an opaque, eventually-consistent
key/value graph with last-write-wins puts, bounded one-shot reads and
map subscriptions over the children of a path. Two adapters are provided:
an in-process graph and a client for one or more relay peers.
"""

import json
import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import websockets

from .errors import ReplicaUnavailable


logger = logging.getLogger(__name__)

SubscriptionCallback = Callable[[Any, str], Awaitable[None]]

RECONNECT_DELAYS = (0.5, 1.0, 2.0, 4.0, 8.0)


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


def split_path(path: str) -> Tuple[str, str]:
    """Split "a/b/c" into ("a/b", "c")"""
    parent, _, key = path.rpartition("/")
    return parent, key


def new_entry_key() -> str:
    """Time-prefixed random key for set members"""
    return f"{int(time.time() * 1000):x}{secrets.token_hex(6)}"


class Replica(ABC):
    """
    Operations the chat core needs from the replicated store.

    Subscription callbacks are coroutines receiving (value, entry_key).
    """

    @abstractmethod
    async def put(self, path: str, value: Any) -> None:
        """Write a value at a path (last write wins, no transactions)"""

    async def add(self, path: str, value: Any) -> str:
        """
        Insert a value into the set at path under a fresh entry key.

        Returns:
            The generated entry key
        """
        key = new_entry_key()
        await self.put(join_path(path, key), value)
        return key

    @abstractmethod
    async def get_once(self, path: str, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Read a path once.

        Returns:
            The leaf value, a {key: value} map for a node with children,
            or None when nothing has been seen (absent or not replicated yet)
        """

    @abstractmethod
    async def subscribe_map(self, path: str, callback: SubscriptionCallback) -> None:
        """Receive existing and future children of path"""

    @abstractmethod
    async def unsubscribe(self, path: str) -> None:
        """Stop delivering children of path; no callback fires afterwards"""

    async def close(self) -> None:
        pass


class MemoryGraph:
    """Shared state behind one or more MemoryReplica views"""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.children: Dict[str, Dict[str, None]] = {}
        self.subscribers: Dict[str, List[Tuple["MemoryReplica", SubscriptionCallback]]] = {}


class MemoryReplica(Replica):
    """
    In-process graph.

    Used for tests and offline use. Several clients can share one graph by
    calling peer(), each view keeping its own subscriptions. Values are copied
    through JSON so callers never share mutable state with the store.
    """

    def __init__(self, graph: Optional[MemoryGraph] = None):
        self.graph = graph or MemoryGraph()
        self.available = True
        self.reads = 0
        self.writes: List[str] = []

    def peer(self) -> "MemoryReplica":
        """Another client's view of the same graph"""
        return MemoryReplica(self.graph)

    def _check(self):
        if not self.available:
            raise ReplicaUnavailable("Replica offline")

    @staticmethod
    def _copy(value: Any) -> Any:
        return json.loads(json.dumps(value))

    async def put(self, path: str, value: Any) -> None:
        self._check()
        value = self._copy(value)
        parent, key = split_path(path)
        self.graph.values[path] = value
        self.graph.children.setdefault(parent, {})[key] = None
        self.writes.append(path)

        subscribers = self.graph.subscribers
        for entry in list(subscribers.get(parent, [])):
            if entry in subscribers.get(parent, []):
                await entry[1](self._copy(value), key)

    async def get_once(self, path: str, timeout: Optional[float] = None) -> Optional[Any]:
        self._check()
        self.reads += 1
        if path in self.graph.values:
            return self._copy(self.graph.values[path])
        children = self.graph.children.get(path)
        if children:
            return {key: self._copy(self.graph.values[join_path(path, key)]) for key in children}
        return None

    async def subscribe_map(self, path: str, callback: SubscriptionCallback) -> None:
        self._check()
        entry = (self, callback)
        subscribers = self.graph.subscribers
        subscribers.setdefault(path, []).append(entry)
        for key in list(self.graph.children.get(path, {})):
            if entry not in subscribers.get(path, []):
                break
            await callback(self._copy(self.graph.values[join_path(path, key)]), key)

    async def unsubscribe(self, path: str) -> None:
        entries = self.graph.subscribers.get(path, [])
        remaining = [e for e in entries if e[0] is not self]
        if remaining:
            self.graph.subscribers[path] = remaining
        else:
            self.graph.subscribers.pop(path, None)

    def subscriber_count(self, path: str) -> int:
        return len(self.graph.subscribers.get(path, []))


class RelayReplica(Replica):
    """
    Client for relay peers.

    Puts and reads go over HTTP to every configured peer: a write succeeds if
    any peer accepts it, a read returns the first non-empty answer.
    Subscriptions use a single WebSocket to the first reachable peer; when it
    drops, the client reconnects with backoff and re-subscribes every path.
    """

    def __init__(self, peers: List[str], timeout: float = 5.0,
                 http_client: Optional[httpx.AsyncClient] = None,
                 connect: Callable = websockets.connect,
                 reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
                 on_disconnect: Optional[Callable[[Exception], None]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Initialize the relay client.

        Args:
            peers: Base URLs of relay peers, e.g. "http://localhost:8765"
            timeout: Default request timeout in seconds
            http_client: Optional preconfigured httpx client
            connect: WebSocket connect function
            reconnect_delays: Waits before each reconnect attempt
            on_disconnect: Called with the last error once reconnecting gives up
            sleep: Coroutine used for reconnect waits
        """
        if not peers:
            raise ValueError("At least one relay peer is required")
        self.peers = [p.rstrip("/") for p in peers]
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._connect = connect
        self.reconnect_delays = list(reconnect_delays)
        self.on_disconnect = on_disconnect
        self._sleep = sleep
        self.websocket = None
        self._receive_task: Optional[asyncio.Task] = None
        self._subscriptions: Dict[str, SubscriptionCallback] = {}
        self._closed = False

    async def put(self, path: str, value: Any) -> None:
        accepted = 0
        for peer in self.peers:
            try:
                response = await self.http_client.put(
                    f"{peer}/api/graph",
                    json={"path": path, "value": value},
                )
                response.raise_for_status()
                accepted += 1
            except httpx.HTTPError as e:
                logger.warning("Put %s to %s failed: %s", path, peer, e)

        if not accepted:
            raise ReplicaUnavailable(f"No relay peer accepted write to {path}")

    async def get_once(self, path: str, timeout: Optional[float] = None) -> Optional[Any]:
        failures = 0
        for peer in self.peers:
            try:
                response = await self.http_client.get(
                    f"{peer}/api/graph/{path}",
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.TimeoutException:
                # Slow peer: indistinguishable from not-yet-replicated
                continue
            except httpx.HTTPError as e:
                logger.debug("Read %s from %s failed: %s", path, peer, e)
                failures += 1
                continue

            if response.status_code == 404:
                continue
            if response.status_code != 200:
                failures += 1
                continue

            value = response.json().get("value")
            if value is not None:
                return value

        if failures == len(self.peers):
            raise ReplicaUnavailable(f"No relay peer reachable for {path}")
        return None

    async def _ensure_socket(self):
        if self.websocket is not None:
            return self.websocket

        for peer in self.peers:
            ws_url = peer.replace("http", "ws", 1) + "/ws"
            try:
                self.websocket = await self._connect(ws_url)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("WebSocket connection to %s failed: %s", ws_url, e)
                continue

            self._receive_task = asyncio.create_task(self._receive_loop(self.websocket))
            for path in self._subscriptions:
                await self.websocket.send(json.dumps({"type": "subscribe", "path": path}))
            return self.websocket

        raise ReplicaUnavailable("No relay peer accepted a WebSocket connection")

    async def _receive_loop(self, websocket):
        """Dispatch entry frames to subscription callbacks"""
        try:
            async for raw in websocket:
                try:
                    data = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed relay frame")
                    continue
                if not isinstance(data, dict):
                    logger.warning("Ignoring malformed relay frame")
                    continue

                if data.get("type") == "entry":
                    callback = self._subscriptions.get(data.get("path"))
                    if callback is None:
                        continue
                    try:
                        await callback(data.get("value"), data.get("key"))
                    except Exception:
                        logger.exception("Subscription callback for %s failed", data.get("path"))
                elif data.get("type") == "error":
                    logger.warning("Relay error: %s", data.get("message"))
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Relay WebSocket closed")
        finally:
            if self.websocket is websocket:
                self.websocket = None

        if not self._closed and self._subscriptions:
            await self._reconnect()

    async def _reconnect(self):
        """Re-open the subscription socket with bounded backoff"""
        error: Exception = ReplicaUnavailable("Relay WebSocket closed")
        for attempt, delay in enumerate(self.reconnect_delays, start=1):
            await self._sleep(delay)
            if self._closed or self.websocket is not None:
                return
            try:
                # A fresh connection re-subscribes every registered path
                await self._ensure_socket()
            except ReplicaUnavailable as e:
                error = e
                logger.warning("Reconnect attempt %d failed: %s", attempt, e)
                continue
            logger.info("Relay WebSocket reconnected")
            return

        logger.error("Giving up on relay WebSocket after %d attempts", len(self.reconnect_delays))
        if self.on_disconnect:
            self.on_disconnect(error)

    async def subscribe_map(self, path: str, callback: SubscriptionCallback) -> None:
        connected = self.websocket is not None
        self._subscriptions[path] = callback
        websocket = await self._ensure_socket()
        if connected:
            # A fresh connection already subscribed every registered path
            await websocket.send(json.dumps({"type": "subscribe", "path": path}))

    async def unsubscribe(self, path: str) -> None:
        if self._subscriptions.pop(path, None) is None or self.websocket is None:
            return
        try:
            await self.websocket.send(json.dumps({"type": "unsubscribe", "path": path}))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Unsubscribe %s after connection closed", path)

    async def close(self) -> None:
        self._closed = True
        self._subscriptions.clear()
        if self._receive_task:
            self._receive_task.cancel()
            self._receive_task = None
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
        if self._owns_client:
            await self.http_client.aclose()
