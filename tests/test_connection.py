import asyncio
import time

import pytest
import websockets

from client.connection import ConnectionManager, with_token
from core import protocol
from core.errors import TransportError
from models.models import ConnectionState, HostInfo


def _url(server):
    return f"ws://127.0.0.1:{server.sockets[0].getsockname()[1]}"


async def _greet(ws):
    await ws.send(protocol.encode(protocol.Notification(
        method=protocol.GREETING_METHOD, params={"version": "1.0.0", "unitCount": 0},
    )))


def test_with_token_replaces_existing_token():
    assert with_token("ws://h:1/?token=old&x=1", "new") == "ws://h:1/?x=1&token=new"
    assert with_token("ws://h:1", None) == "ws://h:1"


def test_host_that_never_greets_times_out():
    async def silent(ws):
        await ws.wait_closed()

    async def scenario():
        async with websockets.serve(silent, "127.0.0.1", 0) as server:
            conn = ConnectionManager(_url(server), connect_timeout=0.3)
            started = time.monotonic()
            with pytest.raises(TransportError):
                await conn.connect()
            assert time.monotonic() - started < 2.0
            assert conn.state is ConnectionState.DISCONNECTED
            assert conn.host_info is None

    asyncio.run(scenario())


def test_null_counts_in_debug_info_abort_the_connection():
    async def host(ws):
        await _greet(ws)
        async for raw in ws:
            req = protocol.decode(raw)
            if req.method == "getDebugInfo":
                result = {"managedRootPath": "/x", "totalUnits": None}
            else:
                result = 0
            await ws.send(protocol.encode(protocol.make_response(req.id, result)))

    async def scenario():
        async with websockets.serve(host, "127.0.0.1", 0) as server:
            conn = ConnectionManager(_url(server), connect_timeout=5)
            with pytest.raises(TransportError):
                await conn.connect()
            assert conn.state is ConnectionState.DISCONNECTED
            assert conn.ready is False

    asyncio.run(scenario())


def test_host_info_rejects_bad_shapes():
    with pytest.raises(ValueError):
        HostInfo.from_dict("weird")
    with pytest.raises(ValueError):
        HostInfo.from_dict({"totalUnits": 1})
    with pytest.raises(ValueError):
        HostInfo.from_dict({"managedRootPath": "/x", "loadedUnits": "many"})
    info = HostInfo.from_dict({"managedRootPath": "/x", "totalUnits": 2, "loadedUnits": 1})
    assert (info.total_units, info.loaded_units) == (2, 1)
