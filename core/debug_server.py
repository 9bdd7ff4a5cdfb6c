"""hotdeploy: Debug Server (host side)

WebSocket listener that exposes the HostDispatcher to debug clients.

Per connection:
1. Authenticate when enabled: token from the `token` query parameter or an
   `Authorization: Bearer` header, compared in constant time. A mismatch
   closes the socket with 4001 "Unauthorized".
2. Send the `welcome` notification {version, unitCount}.
3. Answer requests through a per-connection RpcEndpoint.

Events from elsewhere in the host are fanned out to every open connection as
`event` notifications. Delivery is best-effort: a client whose write fails is
skipped.
"""

from __future__ import annotations
import asyncio
import hmac
import json
import logging
from typing import Any, Optional, Set
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from core import protocol
from core.config import ConfigStore
from core.dispatcher import HostDispatcher
from core.errors import safe_text
from core.plugin_manager import PluginManager
from core.rpc import RpcEndpoint
from models.models import DebugConfig

logger = logging.getLogger("hotdeploy.debug_server")


def _extract_token(ws) -> Optional[str]:
    request = getattr(ws, "request", None)
    if request is None:
        return None
    query = parse_qs(urlsplit(request.path).query)
    tokens = query.get("token")
    if tokens:
        return tokens[0]
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return None


def build_event_params(event_type: str, payload: Any) -> dict:
    """Wrap a payload as {eventType, ...payload}, stringifying what JSON can't hold."""
    if isinstance(payload, dict):
        params = {"eventType": event_type}
        params.update(payload)
    else:
        params = {"eventType": event_type, "data": payload}
    try:
        json.dumps(params)
    except (TypeError, ValueError, RecursionError):
        params = {"eventType": event_type, "raw": safe_text(payload, 2000)}
    return params


class DebugServer:
    def __init__(self, dispatcher: HostDispatcher, config: DebugConfig):
        self.dispatcher = dispatcher
        self.config = config
        self._server = None
        self._clients: Set[Any] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def port(self) -> int:
        """Actually bound port (differs from config.port when it is 0)."""
        if self._server is None:
            return self.config.port
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return self.config.port

    @property
    def url(self) -> str:
        return f"ws://{self.config.host}:{self.port}"

    async def start(self) -> None:
        if self._server is not None:
            return
        if self.config.enable_auth and not self.config.auth_token:
            logger.warning("Auth is enabled but no token is configured; connections are not checked")
        self._server = await websockets.serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            max_size=protocol.MAX_FRAME_BYTES,
        )
        logger.info("Debug server listening on %s (auth=%s)", self.url,
                    "enabled" if self.config.auth_active else "disabled")

    async def stop(self) -> None:
        if self._server is None:
            return
        for ws in list(self._clients):
            try:
                await ws.close(protocol.CLOSE_NORMAL, "Server stopping")
            except Exception as e:
                logger.debug("Error closing client: %s", safe_text(e))
        self._clients.clear()
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        for task in list(self._tasks):
            task.cancel()
        logger.info("Debug server stopped")

    async def restart(self, config: DebugConfig) -> None:
        await self.stop()
        self.config = config
        await self.start()

    def _authenticate(self, ws) -> bool:
        if not self.config.auth_active:
            return True
        provided = _extract_token(ws)
        if not isinstance(provided, str) or not provided:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self.config.auth_token.encode("utf-8"))

    async def _handle_connection(self, ws) -> None:
        peer = getattr(ws, "remote_address", None)
        if not self._authenticate(ws):
            logger.warning("Rejected unauthenticated connection from %s", peer)
            await ws.close(protocol.CLOSE_UNAUTHORIZED, "Unauthorized")
            return

        self._clients.add(ws)
        logger.info("Client connected: %s (%d total)", peer, len(self._clients))
        endpoint = RpcEndpoint(ws.send, responder=self.dispatcher.handle, name=f"client {peer}")
        in_flight: Set[asyncio.Task] = set()
        try:
            await endpoint.notify(protocol.GREETING_METHOD, self.dispatcher.greeting())
            async for raw in ws:
                task = asyncio.create_task(endpoint.handle_incoming(raw))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(ws)
            endpoint.fail_all("connection closed")
            for task in list(in_flight):
                task.cancel()
            logger.info("Client disconnected: %s (%d remaining)", peer, len(self._clients))

    async def broadcast_event(self, event_type: str, payload: Any = None) -> int:
        """Send an `event` notification to every open client. Returns deliveries."""
        frame = protocol.encode(protocol.Notification(
            method=protocol.EVENT_METHOD,
            params=build_event_params(event_type, payload or {}),
        ))
        delivered = 0
        for ws in list(self._clients):
            if ws.state is not State.OPEN:
                continue
            try:
                await ws.send(frame)
                delivered += 1
            except Exception as e:
                logger.debug("Skipping client during broadcast: %s", safe_text(e))
        return delivered

    def publish(self, event_type: str, payload: Any = None) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("publish(%s) outside the event loop; dropped", event_type)
            return
        task = loop.create_task(self.broadcast_event(event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class DebugService:
    """Ties config, collaborator, dispatcher and server together."""

    def __init__(self, manager: PluginManager, store: ConfigStore,
                 self_id: Optional[str] = None, config: Optional[DebugConfig] = None):
        self.manager = manager
        self.store = store
        kwargs = {"self_id": self_id} if self_id else {}
        self.dispatcher = HostDispatcher(manager, **kwargs)
        self.server = DebugServer(self.dispatcher, config or store.load())
        if getattr(manager, "event_sink", None) is None and hasattr(manager, "event_sink"):
            manager.event_sink = self.server.publish

    @property
    def config(self) -> DebugConfig:
        return self.server.config

    async def start(self) -> None:
        await self.server.start()
        logger.info("Connect with: hotdeploy %s", self.server.url)

    async def stop(self) -> None:
        await self.server.stop()

    async def update_config(self, config: DebugConfig) -> None:
        """Persist the full record and restart the listener with it."""
        self.store.save(config)
        if self.server.running:
            await self.server.restart(config)
        else:
            self.server.config = config

    def on_message(self, payload: Any) -> None:
        self.server.publish("message", payload)

    def on_notify(self, payload: Any) -> None:
        self.server.publish("notify", payload)
