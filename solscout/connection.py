"""Solana RPC adapter used by the detection strategies.

HTTP calls go through ``solana-py``'s :class:`AsyncClient`. Log subscriptions
share one raw ``websockets`` connection speaking ``logsSubscribe`` so a single
socket can carry every venue program. When the socket drops it is reopened
with capped, jittered backoff and every live subscription is issued again;
the ids handed to callers stay valid across reconnects.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import json
import logging
import os
import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import websockets
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey
from solders.signature import Signature

from .config import to_ws_url

logger = logging.getLogger(__name__)

LogsHandler = Callable[[Dict[str, Any]], Any]

WS_PING_INTERVAL = float(os.getenv("SOLANA_WS_PING_INTERVAL", "20") or 20.0)
WS_PING_TIMEOUT = float(os.getenv("SOLANA_WS_PING_TIMEOUT", "20") or 20.0)
WS_ACK_TIMEOUT = float(os.getenv("SOLANA_WS_ACK_TIMEOUT", "10") or 10.0)
WS_BACKOFF_START = float(os.getenv("SOLANA_WS_BACKOFF_START", "1.0") or 1.0)
WS_BACKOFF_CAP = float(os.getenv("SOLANA_WS_BACKOFF_CAP", "20.0") or 20.0)


class SubscriptionError(ConnectionError):
    """Raised when the node rejects or never acknowledges a subscription request."""


def json_like(obj: Any) -> Any:
    """Coerce solders response objects into plain ``dict``/``list`` payloads."""

    if obj is None or isinstance(obj, (dict, list)):
        return obj
    to_json = getattr(obj, "to_json", None)
    if callable(to_json):
        payload = to_json()
        if isinstance(payload, str):
            return json.loads(payload)
        return payload
    return obj


def extract_logs_value(message: Any) -> Optional[Dict[str, Any]]:
    """Return ``params.result.value`` of a ``logsNotification`` frame."""

    if not isinstance(message, dict):
        return None
    params = message.get("params")
    result = params.get("result") if isinstance(params, dict) else None
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, dict):
        return None
    logs = value.get("logs")
    if not isinstance(logs, list):
        return None
    value["logs"] = [
        line.decode("utf-8", "ignore") if isinstance(line, bytes) else line
        for line in logs
        if isinstance(line, (str, bytes))
    ]
    return value


class RpcConnection:
    """Shared chain access for every strategy."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: Optional[str] = None,
        *,
        commitment: str = "confirmed",
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.ws_url = ws_url or to_ws_url(rpc_url)
        self.commitment = commitment
        self._client = client or AsyncClient(rpc_url, commitment=Commitment(commitment))
        self._ws: Any = None
        self._supervisor: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._closing = False
        self._last_error: Optional[BaseException] = None
        self._ids = itertools.count(1)
        self._listener_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        # listener id -> (program id, handler); node subscription id -> listener id
        self._listeners: Dict[int, Tuple[str, LogsHandler]] = {}
        self._server_ids: Dict[int, int] = {}
        self.reconnects = 0

    # JSON-RPC over HTTP ---------------------------------------------------
    async def get_slot(self) -> int:
        resp = await self._client.get_slot()
        return int(resp.value)

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        resp = await self._client.get_transaction(
            Signature.from_string(signature),
            encoding="jsonParsed",
            max_supported_transaction_version=0,
        )
        if resp.value is None:
            return None
        return json_like(resp.value)

    async def get_signatures_for_address(self, address: str, limit: int = 20) -> List[str]:
        resp = await self._client.get_signatures_for_address(
            Pubkey.from_string(address), limit=limit
        )
        return [str(item.signature) for item in resp.value or []]

    # websocket subscriptions ----------------------------------------------
    async def _ensure_ws(self) -> Any:
        if self._closing:
            raise ConnectionError("connection is closed")
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.create_task(
                self._supervise(), name="solscout-ws-supervisor"
            )
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=WS_ACK_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise ConnectionError(
                f"could not connect to {self.ws_url}: {self._last_error}"
            ) from exc
        return self._ws

    async def _supervise(self) -> None:
        backoff = WS_BACKOFF_START
        while not self._closing:
            try:
                ws = await websockets.connect(
                    self.ws_url,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._last_error = exc
                logger.warning("Websocket connect to %s failed: %s", self.ws_url, exc)
            else:
                backoff = WS_BACKOFF_START
                await self._serve(ws)
            if self._closing:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 1.6 + random.uniform(0, 0.5), WS_BACKOFF_CAP)

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        reader = asyncio.create_task(self._read_loop(ws), name="solscout-ws-reader")
        try:
            if self._listeners:
                await self._replay(ws)
            self._connected.set()
            await reader
        finally:
            self._connected.clear()
            self._ws = None
            self._server_ids.clear()
            if not reader.done():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            with contextlib.suppress(Exception):
                await ws.close()

    async def _replay(self, ws: Any) -> None:
        self.reconnects += 1
        for listener_id, (program_id, _handler) in list(self._listeners.items()):
            try:
                await self._subscribe(ws, listener_id, program_id)
            except Exception as exc:
                logger.warning("Failed to resubscribe to logs for %s: %s", program_id, exc)
        logger.info("Websocket reconnected; %d log subscription(s) restored", len(self._server_ids))

    async def _send(self, ws: Any, method: str, params: List[Any]) -> Any:
        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(
                json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            )
            return await asyncio.wait_for(future, timeout=WS_ACK_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise SubscriptionError(f"{method} was not acknowledged") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _subscribe(self, ws: Any, listener_id: int, program_id: str) -> int:
        result = await self._send(
            ws,
            "logsSubscribe",
            [{"mentions": [program_id]}, {"commitment": self.commitment}],
        )
        server_id = int(result)
        self._server_ids[server_id] = listener_id
        return server_id

    async def on_logs(self, program_id: str, handler: LogsHandler) -> int:
        """Subscribe *handler* to logs mentioning *program_id*; returns the subscription id."""

        ws = await self._ensure_ws()
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = (program_id, handler)
        try:
            server_id = await self._subscribe(ws, listener_id, program_id)
        except BaseException:
            self._listeners.pop(listener_id, None)
            raise
        logger.debug(
            "Subscribed to logs for %s (id=%s, node id=%s)", program_id, listener_id, server_id
        )
        return listener_id

    async def remove_on_logs_listener(self, subscription_id: int) -> None:
        self._listeners.pop(subscription_id, None)
        server_ids = [sid for sid, lid in self._server_ids.items() if lid == subscription_id]
        for server_id in server_ids:
            self._server_ids.pop(server_id, None)
        ws = self._ws
        if ws is None or not self._connected.is_set():
            return
        for server_id in server_ids:
            await self._send(ws, "logsUnsubscribe", [server_id])

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        request_id = message.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            if "error" in message:
                future.set_exception(SubscriptionError(str(message["error"])))
            else:
                future.set_result(message.get("result"))
            return
        if message.get("method") != "logsNotification":
            return
        params = message.get("params") or {}
        listener = self._listeners.get(self._server_ids.get(params.get("subscription")))
        if listener is None:
            return
        value = extract_logs_value(message)
        if value is None:
            return
        try:
            result = listener[1](value)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("Logs handler failed")

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", "ignore")
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.debug("Websocket sent non-JSON frame")
                    continue
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = exc
            logger.warning("Websocket reader stopped: %s", exc)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("websocket closed"))

    async def close(self) -> None:
        self._closing = True
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        self._listeners.clear()
        self._server_ids.clear()
        await self._client.close()
