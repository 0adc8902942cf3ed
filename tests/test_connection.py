import asyncio
import itertools
import json
from types import SimpleNamespace

import pytest
from solders.signature import Signature

from solscout import connection as connection_mod
from solscout.connection import RpcConnection, SubscriptionError, extract_logs_value, json_like

from conftest import MINT


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClient:
    def __init__(self):
        self.calls = []
        self.closed = False

    async def get_slot(self):
        return SimpleNamespace(value=321)

    async def get_signatures_for_address(self, pubkey, limit=None):
        self.calls.append(("signatures", str(pubkey), limit))
        return SimpleNamespace(value=[SimpleNamespace(signature="sig-a"), SimpleNamespace(signature="sig-b")])

    async def get_transaction(self, signature, encoding=None, max_supported_transaction_version=None):
        self.calls.append(("transaction", str(signature), encoding, max_supported_transaction_version))

        class _Tx:
            def to_json(self):
                return json.dumps({"meta": {"err": None, "postTokenBalances": []}})

        return SimpleNamespace(value=_Tx())

    async def close(self):
        self.closed = True


def _notification(subscription, logs):
    return {
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {
            "subscription": subscription,
            "result": {"context": {"slot": 1}, "value": {"signature": "sig", "err": None, "logs": logs}},
        },
    }


@pytest.fixture
def connection():
    return RpcConnection("https://rpc.test", client=FakeClient())


def test_ws_url_is_derived(connection):
    assert connection.ws_url == "wss://rpc.test"
    assert RpcConnection("https://rpc.test", "wss://ws.test", client=FakeClient()).ws_url == "wss://ws.test"


@pytest.mark.anyio
async def test_http_calls_go_through_client(connection):
    assert await connection.get_slot() == 321
    assert await connection.get_signatures_for_address(MINT, limit=7) == ["sig-a", "sig-b"]

    signature = str(Signature.default())
    tx = await connection.get_transaction(signature)

    assert tx == {"meta": {"err": None, "postTokenBalances": []}}
    assert connection._client.calls == [
        ("signatures", MINT, 7),
        ("transaction", signature, "jsonParsed", 0),
    ]
    await connection.close()
    assert connection._client.closed


@pytest.mark.anyio
async def test_dispatch_resolves_pending_requests(connection):
    loop = asyncio.get_running_loop()
    ok = loop.create_future()
    failed = loop.create_future()
    connection._pending.update({1: ok, 2: failed})

    connection._dispatch({"jsonrpc": "2.0", "id": 1, "result": 55})
    connection._dispatch({"jsonrpc": "2.0", "id": 2, "error": {"code": -32602, "message": "bad"}})
    connection._dispatch({"jsonrpc": "2.0", "id": 3, "result": 1})

    assert ok.result() == 55
    with pytest.raises(SubscriptionError, match="bad"):
        failed.result()


@pytest.mark.anyio
async def test_dispatch_routes_notifications_by_subscription(connection):
    seen = []

    def _broken(value):
        raise RuntimeError("handler bug")

    connection._listeners.update({1: ("ProgA", seen.append), 2: ("ProgB", _broken)})
    connection._server_ids.update({9: 1, 10: 2})

    connection._dispatch(_notification(9, ["Program log: InitializePool"]))
    connection._dispatch(_notification(10, ["x"]))
    connection._dispatch(_notification(11, ["ignored"]))
    connection._dispatch({"method": "slotNotification", "params": {"subscription": 9}})

    assert len(seen) == 1
    assert seen[0]["logs"] == ["Program log: InitializePool"]


@pytest.mark.anyio
async def test_dispatch_schedules_async_handlers(connection):
    seen = []

    async def _handler(value):
        seen.append(value["signature"])

    connection._listeners[1] = ("ProgA", _handler)
    connection._server_ids[4] = 1
    connection._dispatch(_notification(4, ["log"]))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert seen == ["sig"]


@pytest.mark.anyio
async def test_remove_listener_without_socket_is_local(connection):
    connection._listeners[3] = ("ProgA", print)
    connection._server_ids[77] = 3
    await connection.remove_on_logs_listener(3)
    assert 3 not in connection._listeners
    assert connection._server_ids == {}


def test_extract_logs_value():
    value = extract_logs_value(_notification(1, ["a", b"b", 3]))
    assert value["logs"] == ["a", "b"]
    assert extract_logs_value({"params": {"result": {"value": {"logs": None}}}}) is None
    assert extract_logs_value("nope") is None


def test_json_like_parses_to_json_payloads():
    class _Resp:
        def to_json(self):
            return json.dumps({"slot": 1, "meta": {"err": None}})

    assert json_like(_Resp()) == {"slot": 1, "meta": {"err": None}}
    assert json_like({"a": 1}) == {"a": 1}
    assert json_like(None) is None


async def _until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


class FakeSocket:
    """Answers every request immediately; ``drop`` ends the stream with an error."""

    def __init__(self, server_ids):
        self.sent = []
        self.closed = False
        self._server_ids = server_ids
        self._inbox = asyncio.Queue()

    async def send(self, text):
        message = json.loads(text)
        self.sent.append(message)
        if message["method"] == "logsSubscribe":
            result = next(self._server_ids)
        else:
            result = True
        self.push({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def push(self, message):
        self._inbox.put_nowait(json.dumps(message))

    def drop(self):
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._inbox.get()
        if raw is None:
            raise ConnectionError("socket dropped")
        return raw

    async def close(self):
        self.closed = True


@pytest.fixture
def sockets(monkeypatch):
    opened = []
    server_ids = itertools.count(100)

    async def _connect(url, **kwargs):
        sock = FakeSocket(server_ids)
        opened.append(sock)
        return sock

    monkeypatch.setattr(connection_mod.websockets, "connect", _connect)
    monkeypatch.setattr(connection_mod, "WS_BACKOFF_START", 0.01)
    return opened


@pytest.mark.anyio
async def test_log_subscriptions_are_replayed_after_reconnect(connection, sockets):
    seen = []
    subscription_id = await connection.on_logs("ProgA", seen.append)

    first = sockets[0]
    assert first.sent[0]["method"] == "logsSubscribe"
    assert first.sent[0]["params"] == [{"mentions": ["ProgA"]}, {"commitment": "confirmed"}]
    assert connection._server_ids == {100: subscription_id}

    first.drop()
    await _until(lambda: len(sockets) == 2 and connection._connected.is_set())

    second = sockets[1]
    assert first.closed
    assert second.sent[0]["method"] == "logsSubscribe"
    assert second.sent[0]["params"][0] == {"mentions": ["ProgA"]}
    assert connection._server_ids == {101: subscription_id}
    assert connection.reconnects == 1

    second.push(_notification(101, ["Program log: InitializePool"]))
    await _until(lambda: seen)
    assert seen[0]["logs"] == ["Program log: InitializePool"]

    await connection.remove_on_logs_listener(subscription_id)
    assert second.sent[-1]["method"] == "logsUnsubscribe"
    assert second.sent[-1]["params"] == [101]
    await connection.close()
    assert second.closed


@pytest.mark.anyio
async def test_removed_listeners_are_not_replayed(connection, sockets):
    keep = await connection.on_logs("ProgA", print)
    gone = await connection.on_logs("ProgB", print)
    await connection.remove_on_logs_listener(gone)

    sockets[0].drop()
    await _until(lambda: len(sockets) == 2 and connection._connected.is_set())

    replayed = [m["params"][0]["mentions"] for m in sockets[1].sent if m["method"] == "logsSubscribe"]
    assert replayed == [["ProgA"]]
    assert list(connection._server_ids.values()) == [keep]
    await connection.close()


@pytest.mark.anyio
async def test_unreachable_socket_raises_connection_error(connection, monkeypatch):
    async def _refuse(url, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(connection_mod.websockets, "connect", _refuse)
    monkeypatch.setattr(connection_mod, "WS_BACKOFF_START", 0.01)
    monkeypatch.setattr(connection_mod, "WS_ACK_TIMEOUT", 0.1)

    with pytest.raises(ConnectionError, match="connection refused"):
        await connection.on_logs("ProgA", print)
    assert connection._listeners == {}
    await connection.close()
