"""
JSON-RPC 2.0 over a single WebSocket connection.

Requests are correlated by id, so any number of coroutines may issue
requests concurrently on the same connection. Subscriptions are registered
by the reader as soon as the subscribe response is read, so a notification
that immediately follows the response (such as the current-value replay of
``state_subscribeStorage``) is always routed.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from secure_finality.exceptions import ChainConnectionError, RpcError

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


@dataclass
class _Subscription:
    notification: str
    unsubscribe_method: str
    on_result: Callable[[Any], None]
    on_error: Callable[[BaseException], None]


class JsonRpcWebSocket:
    """Async JSON-RPC client with subscription routing."""

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        max_message_size: int = 16 * 1024 * 1024,
    ) -> None:
        if not url.startswith(("ws://", "wss://")):
            raise ValueError(f"WebSocket URL must start with ws:// or wss://, got {url!r}")
        self.url = url
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.max_message_size = max_message_size

        self._ws: Any = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future[Any]] = {}
        self._pending_subscriptions: Dict[int, _Subscription] = {}
        self._subscriptions: Dict[str, _Subscription] = {}
        self._background: Set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self) -> None:
        """Open the connection and start the reader."""
        try:
            self._ws = await websockets.connect(
                self.url,
                max_size=self.max_message_size,
                open_timeout=self.connect_timeout,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            raise ChainConnectionError(
                f"Could not connect to {self.url}: {exc}",
                details={"url": self.url},
            ) from exc
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Connected to %s", self.url, extra={"event": "rpc.connected", "url": self.url})

    async def close(self) -> None:
        """Close the connection; pending requests and subscriptions fail."""
        self._closing = True
        for task in list(self._background):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self._fail_all(ChainConnectionError("Connection closed", details={"url": self.url}))
        logger.info("Disconnected from %s", self.url, extra={"event": "rpc.disconnected", "url": self.url})

    async def __aenter__(self) -> "JsonRpcWebSocket":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Send one request and return its ``result``."""
        request_id, future = self._prepare()
        return await self._send_and_wait(request_id, future, method, params)

    async def subscribe(
        self,
        method: str,
        params: List[Any],
        *,
        notification: str,
        unsubscribe_method: str,
        on_result: Callable[[Any], None],
        on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        """
        Open a subscription.

        Args:
            method: Subscribe method, e.g. ``state_subscribeStorage``
            params: Subscribe parameters
            notification: Notification method name, e.g. ``state_storage``
            unsubscribe_method: Method that closes the subscription on the node
            on_result: Called with each notification ``result``
            on_error: Called once if the connection is lost

        Returns:
            Idempotent synchronous unsubscribe callable
        """
        request_id, future = self._prepare()
        subscription = _Subscription(notification, unsubscribe_method, on_result, on_error)
        self._pending_subscriptions[request_id] = subscription
        try:
            subscription_id = await self._send_and_wait(request_id, future, method, params)
        finally:
            self._pending_subscriptions.pop(request_id, None)

        key = str(subscription_id)

        def unsubscribe() -> None:
            if self._subscriptions.get(key) is not subscription:
                return
            del self._subscriptions[key]
            if self.connected and not self._closing:
                self._spawn(self._remote_unsubscribe(unsubscribe_method, subscription_id))

        return unsubscribe

    def _prepare(self) -> tuple[int, asyncio.Future[Any]]:
        if not self.connected:
            raise ChainConnectionError("Not connected", details={"url": self.url})
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return request_id, future

    async def _send_and_wait(
        self,
        request_id: int,
        future: asyncio.Future[Any],
        method: str,
        params: Optional[List[Any]],
    ) -> Any:
        payload = json.dumps(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        )
        try:
            await self._ws.send(payload)
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise ChainConnectionError(
                f"{method} timed out after {self.request_timeout}s",
                details={"method": method},
            ) from None
        except ConnectionClosed as exc:
            raise ChainConnectionError(
                f"Connection closed during {method}",
                details={"method": method},
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def _remote_unsubscribe(self, method: str, subscription_id: Any) -> None:
        try:
            await self.request(method, [subscription_id])
        except (ChainConnectionError, RpcError) as exc:
            logger.debug(
                "Remote unsubscribe %s(%s) failed: %s",
                method,
                subscription_id,
                exc,
                extra={"event": "rpc.unsubscribe_failed", "method": method},
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _read_loop(self) -> None:
        error: BaseException = ChainConnectionError("Connection closed", details={"url": self.url})
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            error = ChainConnectionError(f"Connection lost: {exc}", details={"url": self.url})
        finally:
            if not self._closing:
                logger.warning(
                    "Connection to %s lost",
                    self.url,
                    extra={"event": "rpc.connection_lost", "url": self.url},
                )
            self._fail_all(error)

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed message", extra={"event": "rpc.malformed"})
            return

        if "id" in message and message["id"] is not None:
            self._resolve(message)
            return

        params = message.get("params") or {}
        subscription = self._subscriptions.get(str(params.get("subscription")))
        if subscription is None or subscription.notification != message.get("method"):
            logger.debug(
                "Notification for unknown subscription %s",
                params.get("subscription"),
                extra={"event": "rpc.unrouted_notification"},
            )
            return
        try:
            subscription.on_result(params.get("result"))
        except Exception:
            logger.exception(
                "Subscription handler for %s raised",
                subscription.notification,
                extra={"event": "rpc.handler_error"},
            )

    def _resolve(self, message: Dict[str, Any]) -> None:
        request_id = message["id"]
        future = self._pending.get(request_id)
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(
                RpcError(int(error.get("code", 0)), str(error.get("message", "")), error.get("data"))
            )
            return
        result = message.get("result")
        subscription = self._pending_subscriptions.pop(request_id, None)
        if subscription is not None:
            self._subscriptions[str(result)] = subscription
        future.set_result(result)

    def _fail_all(self, error: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            try:
                subscription.on_error(error)
            except Exception:
                logger.exception("Subscription error handler raised", extra={"event": "rpc.handler_error"})
