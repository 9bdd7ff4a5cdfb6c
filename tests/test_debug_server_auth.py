import asyncio
import json

import pytest
import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from client.connection import ConnectionManager
from core.config import ConfigStore
from core.debug_server import DebugServer, DebugService, build_event_params
from core.dispatcher import HostDispatcher
from core.errors import AuthRejection
from core.plugin_manager import DirectoryPluginManager
from models.models import AuthState, ConnectionState, DebugConfig


def _server(tmp_path, **config):
    manager = DirectoryPluginManager(str(tmp_path / "plugins"))
    return DebugServer(HostDispatcher(manager), DebugConfig(host="127.0.0.1", port=0, **config))


def test_wrong_token_closes_with_4001(tmp_path):
    async def scenario():
        server = _server(tmp_path, enable_auth=True, auth_token="secret")
        await server.start()
        try:
            async with websockets.connect(f"{server.url}/?token=wrong") as ws:
                with pytest.raises(ConnectionClosed):
                    await asyncio.wait_for(ws.recv(), timeout=5)
                assert ws.close_code == 4001
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_correct_token_receives_greeting(tmp_path):
    async def scenario():
        server = _server(tmp_path, enable_auth=True, auth_token="secret")
        await server.start()
        try:
            async with websockets.connect(f"{server.url}/?token=secret") as ws:
                greeting = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
            assert greeting["method"] == "welcome"
            assert greeting["params"] == {"version": "1.0.0", "unitCount": 0}
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_bearer_header_is_accepted(tmp_path):
    async def scenario():
        server = _server(tmp_path, enable_auth=True, auth_token="secret")
        await server.start()
        try:
            async with websockets.connect(
                server.url, additional_headers={"Authorization": "Bearer secret"}
            ) as ws:
                greeting = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
            assert greeting["method"] == "welcome"
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_client_classifies_rejection_and_does_not_retry(tmp_path):
    async def scenario():
        server = _server(tmp_path, enable_auth=True, auth_token="secret")
        await server.start()
        try:
            conn = ConnectionManager(server.url, token="wrong", connect_timeout=5)
            with pytest.raises(AuthRejection):
                await conn.connect()
            assert conn.auth_state is AuthState.REJECTED
            assert conn.state is ConnectionState.DISCONNECTED
            with pytest.raises(AuthRejection):
                await conn.ensure_connected()
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_broadcast_reaches_every_client(tmp_path):
    async def scenario():
        server = _server(tmp_path)
        await server.start()
        try:
            async with websockets.connect(server.url) as a, websockets.connect(server.url) as b:
                await a.recv()
                await b.recv()
                delivered = await server.broadcast_event("notify", {"text": "hi"})
                assert delivered == 2
                for ws in (a, b):
                    note = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
                    assert note["method"] == "event"
                    assert note["params"] == {"eventType": "notify", "text": "hi"}
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_event_params_fall_back_to_raw():
    params = build_event_params("message", {"obj": object()})
    assert params["eventType"] == "message"
    assert "raw" in params


class BrokenClient:
    state = State.OPEN

    async def send(self, frame):
        raise ConnectionResetError("peer went away")


def test_broadcast_skips_client_whose_send_fails(tmp_path):
    async def scenario():
        server = _server(tmp_path)
        await server.start()
        try:
            async with websockets.connect(server.url) as ws:
                await ws.recv()
                server._clients.add(BrokenClient())
                delivered = await server.broadcast_event("notify", {"text": "still here"})
                assert delivered == 1
                note = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
                assert note["params"] == {"eventType": "notify", "text": "still here"}
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_service_message_passthrough_reaches_clients(tmp_path):
    async def scenario():
        manager = DirectoryPluginManager(str(tmp_path / "plugins"))
        service = DebugService(manager, ConfigStore(str(tmp_path / "config.json")),
                               config=DebugConfig(host="127.0.0.1", port=0))
        await service.start()
        try:
            async with websockets.connect(service.server.url) as ws:
                await ws.recv()
                service.on_message({"text": "hello"})
                note = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
                assert note["method"] == "event"
                assert note["params"] == {"eventType": "message", "text": "hello"}
                service.on_notify({"level": "info"})
                note = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
                assert note["params"] == {"eventType": "notify", "level": "info"}
        finally:
            await service.stop()

    asyncio.run(scenario())
