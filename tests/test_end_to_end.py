"""End-to-end: real debug service on loopback, real client, real units."""

import asyncio
import json
import os
import shutil

import pytest

from client.build_hook import BuildHook
from client.connection import ConnectionManager
from client.deployer import DeployOrchestrator
from core.config import ConfigStore
from core.debug_server import DebugService
from core.errors import RemoteError
from core.plugin_manager import DirectoryPluginManager
from models.models import ConnectionState, DebugConfig

SAMPLE_UNIT_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sample-unit")


@pytest.fixture
def plugins_dir(tmp_path):
    path = tmp_path / "plugins"
    path.mkdir()
    return path


def _service(tmp_path, plugins_dir):
    manager = DirectoryPluginManager(str(plugins_dir))
    store = ConfigStore(str(tmp_path / "config.json"))
    config = DebugConfig(host="127.0.0.1", port=0, enable_auth=False)
    return manager, DebugService(manager, store, config=config)


def test_ping_empty_host_and_directory_load(tmp_path, plugins_dir):
    shutil.copytree(SAMPLE_UNIT_DIR, plugins_dir / "sample")

    async def scenario():
        manager, service = _service(tmp_path, plugins_dir)
        await service.start()
        conn = ConnectionManager(service.server.url, connect_timeout=5)
        try:
            info = await conn.connect()
            assert conn.state is ConnectionState.READY
            assert conn.greeting["version"] == "1.0.0"
            assert info.managed_root_path == manager.managed_root
            assert conn.supports_remote_transfer is True

            assert await conn.call("ping") == "pong"
            assert await conn.call("getAllUnits") == []

            assert await conn.call("loadDirectoryUnit", "sample") is True
            unit = await conn.call("getUnitInfo", "sample")
            assert unit["loaded"] is True
            assert unit["fileId"] == "sample"

            with pytest.raises(RemoteError) as excinfo:
                await conn.call("reloadUnit", "hotdeploy-debug")
            assert excinfo.value.code == -32001
            with pytest.raises(RemoteError) as excinfo:
                await conn.call("noSuchMethod")
            assert excinfo.value.code == -32601
        finally:
            await conn.close()
            await service.stop()
            await manager.shutdown()

    asyncio.run(scenario())


def test_deploy_first_load_then_reload(tmp_path, plugins_dir):
    build_out = tmp_path / "dist"
    shutil.copytree(SAMPLE_UNIT_DIR, build_out)

    async def scenario():
        manager, service = _service(tmp_path, plugins_dir)
        await service.start()
        conn = ConnectionManager(service.server.url, connect_timeout=5)
        try:
            await conn.connect()
            deployer = DeployOrchestrator(conn)

            first = await deployer.deploy(str(build_out))
            assert first.first_load is True
            assert manager.get_unit("sample").loaded is True

            (build_out / "main.py").write_text(
                (build_out / "main.py").read_text().replace("hello from sample", "hello again")
            )
            second = await deployer.deploy(str(build_out))
            assert second.first_load is False
            module = manager._units["sample"].module
            assert module.GREETING == "hello again"
            assert "hello again" in (plugins_dir / "sample" / "main.py").read_text()
        finally:
            await conn.close()
            await service.stop()
            await manager.shutdown()

    asyncio.run(scenario())


def test_unit_events_are_pushed_to_clients(tmp_path, plugins_dir):
    shutil.copytree(SAMPLE_UNIT_DIR, plugins_dir / "sample")
    events = []

    async def scenario():
        manager, service = _service(tmp_path, plugins_dir)
        await service.start()
        conn = ConnectionManager(service.server.url, on_event=events.append)
        try:
            await conn.connect()
            await conn.call("loadDirectoryUnit", "sample")
            for _ in range(50):
                if any(e.params.get("eventType") == "sample" for e in events):
                    break
                await asyncio.sleep(0.02)
        finally:
            await conn.close()
            await service.stop()
            await manager.shutdown()

    asyncio.run(scenario())
    sample_events = [e.params for e in events if e.params.get("eventType") == "sample"]
    assert sample_events == [{"eventType": "sample", "unitId": "sample", "greeting": "hello from sample"}]


def test_disconnect_then_single_reconnect_on_demand(tmp_path, plugins_dir):
    async def scenario():
        manager, service = _service(tmp_path, plugins_dir)
        await service.start()
        port = service.server.port
        conn = ConnectionManager(service.server.url, connect_timeout=5)
        try:
            await conn.connect()
            await service.stop()
            await asyncio.wait_for(conn.closed_event.wait(), timeout=5)
            assert conn.state is ConnectionState.DISCONNECTED
            assert conn.last_close_code == 1000

            await service.update_config(DebugConfig(host="127.0.0.1", port=port))
            await service.start()
            await conn.ensure_connected()
            assert await conn.call("ping") == "pong"
        finally:
            await conn.close()
            await service.stop()

    asyncio.run(scenario())
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["host"] == "127.0.0.1"


def test_build_hook_deploys_completed_build(tmp_path, plugins_dir):
    build_out = tmp_path / "dist"
    shutil.copytree(SAMPLE_UNIT_DIR, build_out)

    async def scenario():
        manager, service = _service(tmp_path, plugins_dir)
        await service.start()
        hook = BuildHook(ws_url=service.server.url)
        try:
            await hook.build_start()
            result = await hook.build_complete(str(build_out))
            assert result is not None and result.identity == "sample"
            assert manager.get_unit("sample").loaded is True
            assert await hook.build_complete(str(tmp_path / "missing")) is None
            assert hook.last_error is not None
        finally:
            await hook.close()
            await service.stop()
            await manager.shutdown()

    asyncio.run(scenario())
