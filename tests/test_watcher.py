import asyncio
import os

from watchdog.events import FileModifiedEvent, FileMovedEvent

from client.watcher import ChangeWatcher, _TargetEventHandler, qualifies


def _unit(root, name, with_manifest=True):
    path = root / name
    path.mkdir(parents=True)
    if with_manifest:
        (path / "plugin.json").write_text('{"name": "%s"}' % name)
    return path


def test_qualifies_filters_ignored_segments_and_extensions(tmp_path):
    root = str(tmp_path)
    assert qualifies(root, os.path.join(root, "main.py"))
    assert qualifies(root, os.path.join(root, "ui", "app.ts"))
    assert not qualifies(root, os.path.join(root, "notes.txt"))
    assert not qualifies(root, os.path.join(root, "node_modules", "x", "index.js"))
    assert not qualifies(root, os.path.join(root, "__pycache__", "main.cpython-312.pyc"))
    assert not qualifies(root, os.path.join(root, "dist", "main.py"))
    assert not qualifies(root, os.path.join(root, ".git", "config.json"))
    assert not qualifies(root, os.path.join(root, ".hidden.py"))
    assert not qualifies(root, os.path.join(str(tmp_path.parent), "elsewhere.py"))


def test_burst_of_changes_emits_one_signal(tmp_path):
    unit = _unit(tmp_path, "demo")
    signals = []

    async def scenario():
        watcher = ChangeWatcher(signals.append, debounce=0.05)
        try:
            targets = watcher.watch(str(unit))
            assert [t.name for t in targets] == ["demo"]
            for i in range(10):
                watcher.notify_change("demo", str(unit / f"f{i}.py"))
                await asyncio.sleep(0.005)
            await asyncio.sleep(0.2)
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert len(signals) == 1
    assert signals[0].name == "demo"
    assert signals[0].path.endswith("f9.py")


def test_multi_unit_mode_has_independent_timers(tmp_path):
    _unit(tmp_path / "units", "alpha")
    _unit(tmp_path / "units", "beta")
    _unit(tmp_path / "units", "node_modules", with_manifest=False)
    signals = []

    async def scenario():
        watcher = ChangeWatcher(signals.append, debounce=0.05)
        try:
            targets = watcher.watch(str(tmp_path / "units"))
            assert sorted(t.name for t in targets) == ["alpha", "beta"]
            watcher.notify_change("alpha", "a.py")
            watcher.notify_change("beta", "b.py")
            watcher.notify_change("alpha", "a2.py")
            await asyncio.sleep(0.2)
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert sorted(s.name for s in signals) == ["alpha", "beta"]


def test_event_handler_forwards_only_qualifying_paths(tmp_path):
    unit = _unit(tmp_path, "demo")
    signals = []

    async def scenario():
        watcher = ChangeWatcher(signals.append, debounce=0.02)
        try:
            target = watcher.watch(str(unit))[0]
            handler = _TargetEventHandler(watcher, target)
            handler.on_any_event(FileModifiedEvent(str(unit / "__pycache__" / "x.pyc")))
            handler.on_any_event(FileModifiedEvent(str(unit / "README.txt")))
            await asyncio.sleep(0.1)
            assert signals == []
            handler.on_any_event(FileMovedEvent(str(unit / "tmp.swp"), str(unit / "main.py")))
            await asyncio.sleep(0.1)
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert len(signals) == 1
    assert signals[0].path == str(unit / "main.py")


def test_async_handler_is_scheduled(tmp_path):
    unit = _unit(tmp_path, "demo")
    seen = []

    async def on_change(change):
        await asyncio.sleep(0)
        seen.append(change.name)

    async def scenario():
        watcher = ChangeWatcher(on_change, debounce=0.01)
        try:
            watcher.watch(str(unit))
            watcher.notify_change("demo", str(unit / "main.py"))
            await asyncio.sleep(0.1)
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert seen == ["demo"]


def test_removed_target_does_not_fire(tmp_path):
    unit = _unit(tmp_path, "demo")
    signals = []

    async def scenario():
        watcher = ChangeWatcher(signals.append, debounce=0.05)
        try:
            watcher.watch(str(unit))
            watcher.notify_change("demo", "main.py")
            assert watcher.remove_target("demo") is True
            await asyncio.sleep(0.15)
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert signals == []
