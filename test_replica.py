"""
Tests for the replica adapters.
"""

import asyncio
import json

import httpx
import pytest
import websockets

from dchat_client.errors import ReplicaUnavailable
from dchat_client.replica import MemoryReplica, RelayReplica, join_path, new_entry_key, split_path


PEERS = ["http://peer1:8765", "http://peer2:8765/"]

DROP = object()


class FakeSocket:
    """Minimal WebSocket: frames pushed to incoming are yielded by iteration"""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    def push(self, frame):
        self.incoming.put_nowait(json.dumps(frame))

    def push_raw(self, raw):
        self.incoming.put_nowait(raw)

    def drop(self):
        self.incoming.put_nowait(DROP)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.incoming.get()
        if raw is None:
            raise StopAsyncIteration
        if raw is DROP:
            raise websockets.exceptions.ConnectionClosedError(None, None)
        return raw

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


def relay_with(handler, connect=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    if connect is not None:
        kwargs["connect"] = connect
    return RelayReplica(PEERS, http_client=client, **kwargs)


def test_path_helpers():
    assert join_path("users", "alice", "pubKey") == "users/alice/pubKey"
    assert join_path("chat/", "/a:b", "") == "chat/a:b"
    assert split_path("chat/a:b/k1") == ("chat/a:b", "k1")
    assert new_entry_key() != new_entry_key()


def test_requires_peers():
    with pytest.raises(ValueError):
        RelayReplica([])


def test_put_fans_out_to_every_peer():
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.host == "peer1":
            return httpx.Response(500)
        return httpx.Response(200, json={"status": "ok"})

    replica = relay_with(handler)
    asyncio.run(replica.put("chat/a:b/k1", {"ct": "x"}))

    assert [r.url.host for r in requests] == ["peer1", "peer2"]
    assert all(r.method == "PUT" and r.url.path == "/api/graph" for r in requests)
    assert json.loads(requests[1].content) == {"path": "chat/a:b/k1", "value": {"ct": "x"}}


def test_put_fails_when_no_peer_accepts():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ReplicaUnavailable):
        asyncio.run(relay_with(handler).put("chat/a:b/k1", {"ct": "x"}))


def test_get_returns_first_value():
    def handler(request):
        if request.url.host == "peer1":
            return httpx.Response(404, json={"detail": "Not found"})
        return httpx.Response(200, json={"path": "users/bob/pubKey", "value": "jwk"})

    assert asyncio.run(relay_with(handler).get_once("users/bob/pubKey")) == "jwk"


def test_get_absent_and_slow_peers_return_none():
    def handler(request):
        if request.url.host == "peer1":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(404)

    assert asyncio.run(relay_with(handler).get_once("users/ghost/pubKey", timeout=0.5)) is None


def test_get_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ReplicaUnavailable):
        asyncio.run(relay_with(handler).get_once("users/bob/pubKey"))


def test_subscription_over_websocket():
    socket = FakeSocket()
    urls = []
    received = []

    async def connect(url):
        urls.append(url)
        return socket

    async def scenario():
        replica = relay_with(lambda request: httpx.Response(404), connect)
        arrived = asyncio.Event()

        async def broken(value, key):
            raise RuntimeError("listener bug")

        async def on_entry(value, key):
            received.append((key, value))
            arrived.set()

        await replica.subscribe_map("users/bob/chats", broken)
        await replica.subscribe_map("chat/a:b", on_entry)

        socket.push({"type": "entry", "path": "users/bob/chats", "key": "a:b", "value": "a:b"})
        socket.push({"type": "entry", "path": "other", "key": "x", "value": 1})
        socket.push({"type": "entry", "path": "chat/a:b", "key": "k1", "value": {"ct": "c"}})
        await asyncio.wait_for(arrived.wait(), timeout=1)

        await replica.unsubscribe("chat/a:b")
        await replica.close()

    asyncio.run(scenario())

    assert urls == ["ws://peer1:8765/ws"]
    assert received == [("k1", {"ct": "c"})]
    assert socket.sent == [
        {"type": "subscribe", "path": "users/bob/chats"},
        {"type": "subscribe", "path": "chat/a:b"},
        {"type": "unsubscribe", "path": "chat/a:b"},
    ]
    assert socket.closed


def test_websocket_falls_back_to_next_peer():
    socket = FakeSocket()
    urls = []

    async def connect(url):
        urls.append(url)
        if "peer1" in url:
            raise OSError("connection refused")
        return socket

    async def scenario():
        replica = relay_with(lambda request: httpx.Response(404), connect)

        async def on_entry(value, key):
            pass

        await replica.subscribe_map("chat/a:b", on_entry)
        await replica.close()

    asyncio.run(scenario())
    assert urls == ["ws://peer1:8765/ws", "ws://peer2:8765/ws"]


def not_found(request):
    return httpx.Response(404)


def test_malformed_frames_are_skipped():
    socket = FakeSocket()
    received = []

    async def connect(url):
        return socket

    async def scenario():
        replica = relay_with(not_found, connect)
        arrived = asyncio.Event()

        async def on_entry(value, key):
            received.append(key)
            arrived.set()

        await replica.subscribe_map("chat/a:b", on_entry)
        socket.push_raw("not json")
        socket.push_raw("[1, 2]")
        socket.push({"type": "entry", "path": "chat/a:b", "key": "k1", "value": {"ct": "c"}})
        await asyncio.wait_for(arrived.wait(), timeout=1)
        await replica.close()

    asyncio.run(scenario())
    assert received == ["k1"]


def test_reconnects_and_resubscribes_after_drop():
    first, second = FakeSocket(), FakeSocket()
    sockets = [first, second]
    delays = []
    received = []

    async def connect(url):
        return sockets.pop(0)

    async def sleep(delay):
        delays.append(delay)

    async def scenario():
        replica = relay_with(not_found, connect, sleep=sleep)
        arrived = asyncio.Event()

        async def on_entry(value, key):
            received.append(key)
            arrived.set()

        await replica.subscribe_map("chat/a:b", on_entry)
        second.push({"type": "entry", "path": "chat/a:b", "key": "k2", "value": {"ct": "c"}})
        first.drop()
        await asyncio.wait_for(arrived.wait(), timeout=1)
        await replica.close()

    asyncio.run(scenario())

    assert delays == [0.5]
    assert first.sent == [{"type": "subscribe", "path": "chat/a:b"}]
    assert second.sent == [{"type": "subscribe", "path": "chat/a:b"}]
    assert received == ["k2"]
    assert second.closed


def test_reports_disconnect_after_reconnect_gives_up():
    socket = FakeSocket()
    urls = []
    delays = []
    errors = []

    async def connect(url):
        urls.append(url)
        if len(urls) > 1:
            raise OSError("connection refused")
        return socket

    async def sleep(delay):
        delays.append(delay)

    async def scenario():
        gave_up = asyncio.Event()

        def on_disconnect(error):
            errors.append(error)
            gave_up.set()

        replica = relay_with(not_found, connect, sleep=sleep,
                             reconnect_delays=(1.0, 2.0), on_disconnect=on_disconnect)

        async def on_entry(value, key):
            pass

        await replica.subscribe_map("chat/a:b", on_entry)
        socket.drop()
        await asyncio.wait_for(gave_up.wait(), timeout=1)
        await replica.close()

    asyncio.run(scenario())

    assert delays == [1.0, 2.0]
    assert len(urls) == 5
    assert len(errors) == 1
    assert isinstance(errors[0], ReplicaUnavailable)


def test_no_reconnect_after_close():
    socket = FakeSocket()
    urls = []

    async def connect(url):
        urls.append(url)
        return socket

    async def scenario():
        replica = relay_with(not_found, connect)

        async def on_entry(value, key):
            pass

        await replica.subscribe_map("chat/a:b", on_entry)
        await replica.close()
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert urls == ["ws://peer1:8765/ws"]


def test_memory_views_keep_separate_subscriptions():
    first = MemoryReplica()
    second = first.peer()
    seen = []

    async def scenario():
        async def on_first(value, key):
            seen.append(("first", key))

        async def on_second(value, key):
            seen.append(("second", key))

        await first.subscribe_map("chat/a:b", on_first)
        await second.subscribe_map("chat/a:b", on_second)
        await first.unsubscribe("chat/a:b")
        await second.put("chat/a:b/k1", {"ct": "x"})

    asyncio.run(scenario())

    assert seen == [("second", "k1")]
    assert first.subscriber_count("chat/a:b") == 1
    assert asyncio.run(first.get_once("chat/a:b/k1")) == {"ct": "x"}


def test_add_inserts_under_fresh_key():
    replica = MemoryReplica()

    async def scenario():
        first = await replica.add("users/alice/chats", "alice:bob")
        second = await replica.add("users/alice/chats", "alice:bob")
        return first, second, await replica.get_once("users/alice/chats")

    first, second, children = asyncio.run(scenario())

    assert first != second
    assert children == {first: "alice:bob", second: "alice:bob"}
