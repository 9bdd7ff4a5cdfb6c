"""hotdeploy: Plugin-management collaborator

The debug service only talks to units through the PluginManager interface.
DirectoryPluginManager is the reference implementation: every directory under
the managed root holding a plugin.json is a unit, and loading a unit imports
its entry file and calls plugin_init(ctx).

Unit modules are imported under a fresh name per load generation
(hotdeploy_units.<dir>_<n>) so a reload always executes the new code.
"""

from __future__ import annotations
import asyncio
import importlib.util
import inspect
import logging
import os
import re
import shutil
import sys
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from core.errors import safe_text
from models.models import (
    MANIFEST_FILENAME,
    RuntimeStatus,
    UnitManifest,
    UnitSummary,
    is_valid_unit_id,
)

logger = logging.getLogger("hotdeploy.plugin_manager")

UNIT_MODULE_PREFIX = "hotdeploy_units"
DATA_DIRNAME = ".data"

EventSink = Callable[[str, dict], None]


class UnitNotFound(KeyError):
    def __str__(self):
        return f"Unit not found: {self.args[0]}"


class PluginManager(ABC):
    """Operations the debug service proxies to the host's plugin system."""

    @property
    @abstractmethod
    def managed_root(self) -> str:
        pass

    @abstractmethod
    def list_units(self) -> List[UnitSummary]:
        pass

    def loaded_units(self) -> List[UnitSummary]:
        return [u for u in self.list_units() if u.loaded]

    def get_unit(self, unit_id: str) -> Optional[UnitSummary]:
        for unit in self.list_units():
            if unit.id == unit_id:
                return unit
        return None

    @abstractmethod
    async def set_unit_status(self, unit_id: str, enabled: bool) -> None:
        pass

    @abstractmethod
    async def load_unit(self, unit_id: str) -> bool:
        pass

    @abstractmethod
    async def unregister_unit(self, unit_id: str) -> None:
        pass

    @abstractmethod
    async def reload_unit(self, unit_id: str) -> bool:
        pass

    @abstractmethod
    async def load_directory_unit(self, dir_name: str) -> bool:
        pass

    @abstractmethod
    async def scan_units(self) -> int:
        pass

    @abstractmethod
    async def uninstall_unit(self, unit_id: str, remove_data: bool = False) -> None:
        pass

    @abstractmethod
    def unit_data_path(self, unit_id: str) -> str:
        pass

    async def shutdown(self) -> None:
        pass


class UnitContext:
    """Handed to plugin_init / plugin_cleanup."""

    def __init__(self, unit_id: str, unit_path: str, data_path: str, emit: EventSink):
        self.unit_id = unit_id
        self.unit_path = unit_path
        self.data_path = data_path
        self.logger = logging.getLogger(f"hotdeploy.unit.{unit_id}")
        self._emit = emit

    def emit(self, event_type: str, payload: Optional[dict] = None) -> None:
        """Broadcast an event to every connected debug client."""
        body = {"unitId": self.unit_id}
        body.update(payload or {})
        self._emit(event_type, body)


class _UnitRecord:
    def __init__(self, manifest: UnitManifest, dir_name: str, path: str):
        self.manifest = manifest
        self.dir_name = dir_name
        self.path = path
        self.enabled = False
        self.module: Any = None
        self.context: Optional[UnitContext] = None
        self.status = RuntimeStatus.STOPPED
        self.error: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self.module is not None

    @property
    def entry_path(self) -> str:
        return os.path.join(self.path, self.manifest.main)

    def summary(self) -> UnitSummary:
        return UnitSummary(
            id=self.manifest.name,
            file_id=self.dir_name,
            name=self.manifest.name,
            version=self.manifest.version,
            description=self.manifest.description,
            author=self.manifest.author,
            unit_path=self.path,
            entry_path=self.entry_path,
            enabled=self.enabled,
            loaded=self.loaded,
            runtime_status=self.status,
            runtime_error=self.error,
        )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DirectoryPluginManager(PluginManager):
    def __init__(self, root: str, event_sink: Optional[EventSink] = None):
        self._root = os.path.realpath(root)
        os.makedirs(self._root, exist_ok=True)
        self._units: Dict[str, _UnitRecord] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self.event_sink = event_sink

    @property
    def managed_root(self) -> str:
        return self._root

    # --- Queries ---

    def list_units(self) -> List[UnitSummary]:
        return [rec.summary() for rec in sorted(self._units.values(), key=lambda r: r.manifest.name)]

    def get_unit(self, unit_id: str) -> Optional[UnitSummary]:
        rec = self._units.get(unit_id)
        return rec.summary() if rec else None

    def unit_data_path(self, unit_id: str) -> str:
        rec = self._require(unit_id)
        return os.path.join(self._root, DATA_DIRNAME, rec.dir_name)

    # --- Lifecycle ---

    async def set_unit_status(self, unit_id: str, enabled: bool) -> None:
        async with self._lock:
            rec = self._require(unit_id)
            rec.enabled = enabled
            if not enabled and rec.loaded:
                await self._unload(rec)
            logger.info("Unit %s %s", safe_text(unit_id), "enabled" if enabled else "disabled")

    async def load_unit(self, unit_id: str) -> bool:
        async with self._lock:
            rec = self._require(unit_id)
            if rec.loaded:
                return True
            return await self._load(rec)

    async def unregister_unit(self, unit_id: str) -> None:
        async with self._lock:
            rec = self._require(unit_id)
            if rec.loaded:
                await self._unload(rec)
            del self._units[unit_id]
            logger.info("Unit %s unregistered", safe_text(unit_id))
            self._emit("unit", {"action": "unregistered", "unitId": unit_id})

    async def reload_unit(self, unit_id: str) -> bool:
        async with self._lock:
            rec = self._units.get(unit_id)
            if rec is None:
                return False
            if rec.loaded:
                await self._unload(rec)
            rec.manifest = self._read_manifest(rec.path)
            if rec.enabled and not await self._load(rec):
                raise RuntimeError(f"Unit {unit_id} failed to load: {rec.error}")
            logger.info("Unit %s reloaded", safe_text(unit_id))
            self._emit("unit", {"action": "reloaded", "unitId": unit_id})
            return True

    async def load_directory_unit(self, dir_name: str) -> bool:
        async with self._lock:
            path = self._unit_dir(dir_name)
            manifest = self._read_manifest(path)
            rec = self._units.get(manifest.name)
            if rec is not None:
                if rec.loaded:
                    await self._unload(rec)
                rec.manifest, rec.dir_name, rec.path = manifest, dir_name, path
            else:
                rec = self._register(manifest, dir_name, path)
            rec.enabled = True
            if not await self._load(rec):
                raise RuntimeError(f"Unit {manifest.name} failed to load: {rec.error}")
            return True

    async def scan_units(self) -> int:
        async with self._lock:
            known_dirs = {rec.dir_name for rec in self._units.values()}
            added = 0
            for entry in sorted(os.listdir(self._root)):
                if entry in known_dirs or entry.startswith(".") or not is_valid_unit_id(entry):
                    continue
                path = os.path.join(self._root, entry)
                if not os.path.isfile(os.path.join(path, MANIFEST_FILENAME)):
                    continue
                try:
                    manifest = self._read_manifest(path)
                except ValueError as e:
                    logger.warning("Skipping %s: %s", entry, safe_text(e))
                    continue
                if manifest.name in self._units:
                    continue
                self._register(manifest, entry, path)
                added += 1
            if added:
                logger.info("Scan registered %d new unit(s)", added)
            return added

    async def uninstall_unit(self, unit_id: str, remove_data: bool = False) -> None:
        async with self._lock:
            rec = self._require(unit_id)
            if rec.loaded:
                await self._unload(rec)
            del self._units[unit_id]
            shutil.rmtree(rec.path, ignore_errors=False)
            if remove_data:
                data_path = os.path.join(self._root, DATA_DIRNAME, rec.dir_name)
                if os.path.isdir(data_path):
                    shutil.rmtree(data_path)
            logger.info("Unit %s uninstalled (remove_data=%s)", safe_text(unit_id), remove_data)
            self._emit("unit", {"action": "uninstalled", "unitId": unit_id})

    async def shutdown(self) -> None:
        async with self._lock:
            for rec in list(self._units.values()):
                if rec.loaded:
                    await self._unload(rec)

    # --- Internals ---

    def _require(self, unit_id: str) -> _UnitRecord:
        rec = self._units.get(unit_id)
        if rec is None:
            raise UnitNotFound(unit_id)
        return rec

    def _unit_dir(self, dir_name: str) -> str:
        if not is_valid_unit_id(dir_name):
            raise ValueError(f"Invalid unit directory name: {safe_text(dir_name)!r}")
        path = os.path.realpath(os.path.join(self._root, dir_name))
        if os.path.dirname(path) != self._root:
            raise ValueError("Unit directory must be a direct child of the managed root")
        if not os.path.isdir(path):
            raise FileNotFoundError(f"Unit directory not found: {dir_name}")
        return path

    @staticmethod
    def _read_manifest(path: str) -> UnitManifest:
        manifest_path = os.path.join(path, MANIFEST_FILENAME)
        if not os.path.isfile(manifest_path):
            raise ValueError(f"No {MANIFEST_FILENAME} in {path}")
        return UnitManifest.from_json(manifest_path)

    def _register(self, manifest: UnitManifest, dir_name: str, path: str) -> _UnitRecord:
        rec = _UnitRecord(manifest, dir_name, path)
        self._units[manifest.name] = rec
        logger.info("Unit %s registered from %s", safe_text(manifest.name), dir_name)
        self._emit("unit", {"action": "registered", "unitId": manifest.name})
        return rec

    async def _load(self, rec: _UnitRecord) -> bool:
        entry = rec.entry_path
        unit_id = rec.manifest.name
        if not os.path.isfile(entry):
            rec.status, rec.error = RuntimeStatus.ERROR, f"entry not found: {rec.manifest.main}"
            logger.error("Unit %s: %s", safe_text(unit_id), rec.error)
            return False

        self._generation += 1
        safe_dir = re.sub(r'[^A-Za-z0-9_]', '_', rec.dir_name)
        module_name = f"{UNIT_MODULE_PREFIX}.{safe_dir}_{self._generation}"
        spec = importlib.util.spec_from_file_location(module_name, entry)
        if spec is None or spec.loader is None:
            rec.status, rec.error = RuntimeStatus.ERROR, "cannot create import spec"
            return False

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        data_path = os.path.join(self._root, DATA_DIRNAME, rec.dir_name)
        context = UnitContext(unit_id, rec.path, data_path, self._emit)
        try:
            # Compile from source: a cached .pyc could shadow a same-size edit
            with open(entry, "rb") as f:
                code = compile(f.read(), entry, "exec")
            exec(code, module.__dict__)
            init = getattr(module, "plugin_init", None)
            if callable(init):
                await _maybe_await(init(context))
        except Exception as e:
            sys.modules.pop(module_name, None)
            rec.status, rec.error = RuntimeStatus.ERROR, safe_text(e)
            logger.error("Unit %s failed to load: %s", safe_text(unit_id), rec.error, exc_info=True)
            return False

        rec.module, rec.context = module, context
        rec.status, rec.error = RuntimeStatus.LOADED, None
        logger.info("Unit %s loaded (%s)", safe_text(unit_id), module_name)
        self._emit("unit", {"action": "loaded", "unitId": unit_id})
        return True

    async def _unload(self, rec: _UnitRecord) -> None:
        module, context = rec.module, rec.context
        rec.module, rec.context = None, None
        rec.status = RuntimeStatus.STOPPED
        cleanup = getattr(module, "plugin_cleanup", None)
        if callable(cleanup):
            try:
                await _maybe_await(cleanup(context))
            except Exception as e:
                logger.warning("Unit %s cleanup failed: %s", safe_text(rec.manifest.name), safe_text(e))
        if module is not None:
            sys.modules.pop(module.__name__, None)
        logger.info("Unit %s unloaded", safe_text(rec.manifest.name))
        self._emit("unit", {"action": "unloaded", "unitId": rec.manifest.name})

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink(event_type, payload)
        except Exception as e:
            logger.debug("Event sink failed: %s", safe_text(e))
