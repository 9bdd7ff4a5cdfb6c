"""hotdeploy: RPC Endpoint

Per-connection call/response correlation, used on both sides of the socket.

- Outgoing calls get ids from a local counter starting at 1. A call stays in
  the pending table until its response arrives or its deadline expires,
  whichever comes first; the loser finds nothing and is dropped.
- Incoming Responses settle the matching pending call.
- Incoming Notifications go to the registered sink.
- Incoming Requests go to the responder, which is answered exactly once.
  Responder exceptions become INTERNAL_ERROR responses.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from core import protocol
from core.errors import RemoteError, RpcTimeout, TransportError, safe_text
from core.protocol import Notification, Request, Response

logger = logging.getLogger("hotdeploy.rpc")

DEFAULT_CALL_TIMEOUT = 10.0
ACTIVATION_TIMEOUT = 30.0

SendFn = Callable[[str], Awaitable[None]]
NotificationSink = Callable[[Notification], Any]
Responder = Callable[[Request], Awaitable[Response]]


class RpcEndpoint:
    """One side of a JSON-RPC conversation over a single connection."""

    def __init__(
        self,
        send: SendFn,
        on_notification: Optional[NotificationSink] = None,
        responder: Optional[Responder] = None,
        name: str = "endpoint",
        default_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        self._send = send
        self._on_notification = on_notification
        self._responder = responder
        self.name = name
        self.default_timeout = default_timeout
        self._pending: Dict[int, asyncio.Future] = {}
        self._next_id: int = 1
        self._closed_reason: Optional[str] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def call(self, method: str, *params: Any, timeout: Optional[float] = None,
                   unit_id: Optional[str] = None) -> Any:
        """Send a request and wait for its result.

        Raises RpcTimeout, RemoteError or TransportError.
        """
        if self._closed_reason is not None:
            raise TransportError(self._closed_reason, method=method, unit_id=unit_id)
        if timeout is None:
            timeout = self.default_timeout

        request_id = self._allocate_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        frame = protocol.encode(Request(id=request_id, method=method, params=list(params)))

        try:
            try:
                await self._send(frame)
            except Exception as e:
                raise TransportError(f"send failed: {safe_text(e)}", method=method, unit_id=unit_id) from e
            try:
                response: Response = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("%s: call %s #%d timed out after %gs",
                               self.name, method, request_id, timeout)
                raise RpcTimeout(method, timeout, unit_id=unit_id) from None
            except TransportError as e:
                raise TransportError(e.detail, close_code=e.close_code,
                                     method=method, unit_id=unit_id) from e
        finally:
            self._pending.pop(request_id, None)

        if response.is_error:
            raise RemoteError(response.error["code"], response.error["message"],
                              method=method, unit_id=unit_id)
        return response.result

    async def notify(self, method: str, params: Any = None) -> None:
        await self._send(protocol.encode(Notification(method=method, params=params)))

    async def handle_incoming(self, raw) -> None:
        """Route one received frame. Never raises for malformed input."""
        envelope = protocol.decode(raw)
        if envelope is None:
            return

        if isinstance(envelope, Response):
            future = self._pending.pop(envelope.id, None)
            if future is None:
                logger.debug("%s: dropping response for unknown id %r", self.name, envelope.id)
                return
            if not future.done():
                future.set_result(envelope)
            return

        if isinstance(envelope, Notification):
            if self._on_notification is None:
                return
            try:
                outcome = self._on_notification(envelope)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("%s: notification handler failed for %s",
                                 self.name, safe_text(envelope.method, 80))
            return

        await self._answer(envelope)

    async def _answer(self, request: Request) -> None:
        if self._responder is None:
            response = protocol.make_error(request.id, protocol.METHOD_NOT_FOUND,
                                           f"Method not found: {request.method}")
        else:
            try:
                response = await self._responder(request)
            except Exception as e:
                logger.error("%s: responder failed for %s: %s", self.name,
                             safe_text(request.method, 80), safe_text(e), exc_info=True)
                response = protocol.make_error(request.id, protocol.INTERNAL_ERROR, safe_text(e))
        try:
            await self._send(protocol.encode(response))
        except Exception as e:
            logger.debug("%s: could not deliver response #%d: %s", self.name, request.id, safe_text(e))

    def fail_all(self, reason: str, close_code: Optional[int] = None) -> None:
        """Reject every pending call; later calls fail immediately."""
        self._closed_reason = reason
        for req_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(TransportError(reason, close_code=close_code))
        self._pending.clear()
