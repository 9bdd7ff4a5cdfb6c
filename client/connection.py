"""hotdeploy: Client connection lifecycle

DISCONNECTED → CONNECTING → AWAITING_GREETING → READY → DISCONNECTED

- connect() covers socket open and the `welcome` greeting under one timeout.
- On READY it fetches getDebugInfo and probes remote transfer with an empty
  writeFiles call. A failed probe only clears supports_remote_transfer.
- There is no background reconnect. ensure_connected() makes one attempt per
  trigger (a build, a watch signal, an operator command).
- A close with code 4001 means the token was refused: the manager enters
  AuthState.REJECTED and every later attempt raises AuthRejection.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from core import protocol
from core.errors import AuthRejection, HotDeployError, RemoteError, RpcTimeout, TransportError, safe_text
from core.protocol import Notification
from core.rpc import DEFAULT_CALL_TIMEOUT, RpcEndpoint
from models.models import AuthState, ConnectionState, HostInfo

logger = logging.getLogger("hotdeploy.connection")

DEFAULT_URL = "ws://127.0.0.1:8998"
CONNECT_TIMEOUT = 5.0


def with_token(url: str, token: Optional[str]) -> str:
    """Append ?token=... to url (replacing any token already present)."""
    if not token:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ConnectionManager:
    def __init__(
        self,
        url: str = DEFAULT_URL,
        token: Optional[str] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        on_event: Optional[Callable[[Notification], Any]] = None,
    ):
        self.url = url
        self.token = token
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.on_event = on_event

        self.state = ConnectionState.DISCONNECTED
        self.auth_state = AuthState.UNAUTHENTICATED
        self.host_info: Optional[HostInfo] = None
        self.greeting: Optional[dict] = None
        self.supports_remote_transfer = False
        self.last_close_code: Optional[int] = None

        self._ws = None
        self._endpoint: Optional[RpcEndpoint] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._greeting_future: Optional[asyncio.Future] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self.closed_event = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def rejected(self) -> bool:
        return self.auth_state is AuthState.REJECTED

    # --- Lifecycle ---

    async def connect(self) -> HostInfo:
        """One connection attempt. Raises TransportError or AuthRejection."""
        async with self._connect_lock:
            if self.ready:
                return self.host_info
            if self.rejected:
                raise AuthRejection("authentication was rejected by the host; not reconnecting")
            try:
                await asyncio.wait_for(self._open_and_greet(), timeout=self.connect_timeout)
            except asyncio.TimeoutError:
                await self._abort("connect timed out")
                raise TransportError(f"no greeting from {self.url} within {self.connect_timeout:g}s") from None
            except (AuthRejection, TransportError):
                await self._abort("connect failed")
                raise

            self.state = ConnectionState.READY
            self.closed_event.clear()
            try:
                await self._after_ready()
            except Exception:
                await self._abort("post-connect setup failed")
                raise
            return self.host_info

    async def ensure_connected(self) -> HostInfo:
        if self.ready:
            return self.host_info
        logger.info("Connecting to %s", self.url)
        return await self.connect()

    async def close(self) -> None:
        self._closing = True
        ws, reader = self._ws, self._reader_task
        if ws is not None:
            try:
                await ws.close(protocol.CLOSE_NORMAL, "Client closing")
            except Exception as e:
                logger.debug("Error during close: %s", safe_text(e))
        if reader is not None:
            try:
                await asyncio.wait_for(reader, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                reader.cancel()
        self._mark_disconnected("closed by client", protocol.CLOSE_NORMAL)
        self._closing = False

    async def _open_and_greet(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.last_close_code = None
        loop = asyncio.get_running_loop()
        try:
            ws = await websockets.connect(
                with_token(self.url, self.token),
                open_timeout=self.connect_timeout,
                max_size=protocol.MAX_FRAME_BYTES,
            )
        except (OSError, InvalidHandshake, InvalidURI) as e:
            self.state = ConnectionState.DISCONNECTED
            raise TransportError(f"cannot connect to {self.url}: {safe_text(e)}") from e

        self._ws = ws
        self._endpoint = RpcEndpoint(
            ws.send, on_notification=self._on_notification,
            name="host", default_timeout=self.call_timeout,
        )
        self._greeting_future = loop.create_future()
        self.state = ConnectionState.AWAITING_GREETING
        self._reader_task = asyncio.create_task(self._reader_loop(ws, self._endpoint))
        self.greeting = await self._greeting_future
        self.auth_state = AuthState.AUTHENTICATED
        logger.info("Connected to %s (host version %s, %s unit(s))", self.url,
                    self.greeting.get("version"), self.greeting.get("unitCount"))

    async def _after_ready(self) -> None:
        try:
            self.host_info = HostInfo.from_dict(await self.call("getDebugInfo"))
        except (TypeError, ValueError) as e:
            raise TransportError(f"host returned unusable debug info: {safe_text(e)}") from e
        try:
            await self.call("writeFiles", [])
            self.supports_remote_transfer = True
        except (RemoteError, RpcTimeout) as e:
            logger.debug("Remote transfer unavailable: %s", safe_text(e))
            self.supports_remote_transfer = False
        logger.debug("Managed root: %s (remote transfer %s)", self.host_info.managed_root_path,
                     "available" if self.supports_remote_transfer else "unavailable")

    async def _abort(self, reason: str) -> None:
        reader = self._reader_task
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                pass
        if reader is not None and not reader.done():
            reader.cancel()
        self._mark_disconnected(reason, self.last_close_code)

    # --- Calls ---

    async def call(self, method: str, *params: Any, timeout: Optional[float] = None,
                   unit_id: Optional[str] = None) -> Any:
        endpoint = self._endpoint
        if endpoint is None or self.state not in (ConnectionState.READY,):
            raise TransportError("not connected", method=method, unit_id=unit_id)
        try:
            return await endpoint.call(method, *params, timeout=timeout, unit_id=unit_id)
        except TransportError as e:
            if e.close_code == protocol.CLOSE_UNAUTHORIZED:
                raise AuthRejection("authentication rejected", method=method, unit_id=unit_id) from e
            raise

    # --- Reader ---

    def _on_notification(self, note: Notification) -> Any:
        if note.method == protocol.GREETING_METHOD:
            future = self._greeting_future
            if future is not None and not future.done():
                future.set_result(note.params if isinstance(note.params, dict) else {})
            return None
        if self.on_event is not None:
            return self.on_event(note)
        return None

    async def _reader_loop(self, ws, endpoint: RpcEndpoint) -> None:
        try:
            async for raw in ws:
                await endpoint.handle_incoming(raw)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("Reader loop failed")
        finally:
            code = ws.close_code
            reason = ws.close_reason or ""
            self.last_close_code = code
            if code == protocol.CLOSE_UNAUTHORIZED:
                self.auth_state = AuthState.REJECTED
                logger.error("Host rejected authentication (%s %s)", code, safe_text(reason))
                self._fail_greeting(AuthRejection("authentication rejected by host (check --token)"))
            else:
                if not self._closing:
                    logger.warning("Connection closed by host (code=%s %s)", code, safe_text(reason))
                self._fail_greeting(TransportError(f"connection closed during handshake (code={code})",
                                                   close_code=code))
            if self._ws is ws:
                self._mark_disconnected(f"connection closed (code={code})", code)

    def _fail_greeting(self, exc: HotDeployError) -> None:
        future = self._greeting_future
        if future is not None and not future.done():
            future.set_exception(exc)

    def _mark_disconnected(self, reason: str, close_code: Optional[int]) -> None:
        if self._endpoint is not None:
            self._endpoint.fail_all(reason, close_code=close_code)
        self._endpoint = None
        self._ws = None
        self._reader_task = None
        self._greeting_future = None
        self.state = ConnectionState.DISCONNECTED
        self.supports_remote_transfer = False
        self.closed_event.set()
