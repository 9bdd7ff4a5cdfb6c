"""hotdeploy: Host Dispatcher

Routes JSON-RPC requests from debug clients to the plugin-management
collaborator through a closed operation table.

Pipeline per request: lookup → validate params → self-protection → execute → respond

- Unknown methods: METHOD_NOT_FOUND (-32601)
- Positional params checked against each operation's typed signature:
  INVALID_PARAMS (-32602)
- reloadUnit / unregisterUnit / uninstallUnit aimed at the service's own
  identity: SELF_PROTECTED (-32001), collaborator never called
- Any collaborator exception: OPERATION_FAILED (-32000)
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core import protocol
from core.errors import SandboxViolation, safe_text
from core.plugin_manager import PluginManager
from core.protocol import Request, Response
from core.transfer import ManagedRoot
from models.models import HostInfo

logger = logging.getLogger("hotdeploy.dispatcher")

SERVICE_VERSION = "1.0.0"
DEFAULT_SELF_ID = "hotdeploy-debug"


@dataclass(frozen=True)
class Param:
    name: str
    type: str
    optional: bool = False


@dataclass(frozen=True)
class Operation:
    name: str
    handler: Callable[..., Awaitable[Any]]
    params: Tuple[Param, ...] = ()
    self_protected: bool = False


def _check_type(value: Any, expected: str) -> bool:
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "file_list":
        return isinstance(value, list) and all(
            isinstance(item, dict)
            and isinstance(item.get("path"), str)
            and isinstance(item.get("content"), str)
            and isinstance(item.get("encoding", "base64"), str)
            for item in value
        )
    type_map = {
        "string": str,
        "boolean": bool,
        "array": list,
        "object": dict,
    }
    return isinstance(value, type_map[expected])


def validate_params(op: Operation, params: List[Any]) -> Optional[str]:
    if len(params) > len(op.params):
        return f"{op.name} takes at most {len(op.params)} parameter(s), got {len(params)}"
    for index, spec in enumerate(op.params):
        if index >= len(params):
            if spec.optional:
                break
            return f"Missing required parameter: '{spec.name}'"
        if not _check_type(params[index], spec.type):
            return (
                f"Parameter '{spec.name}' expected type '{spec.type}', "
                f"got '{type(params[index]).__name__}'"
            )
    return None


class HostDispatcher:
    def __init__(
        self,
        manager: PluginManager,
        self_id: str = DEFAULT_SELF_ID,
        enable_remote_transfer: bool = True,
    ):
        self.manager = manager
        self.self_id = self_id
        self.started_at = time.monotonic()
        self._managed_root = ManagedRoot(manager.managed_root)
        self._operations: Dict[str, Operation] = {}
        unit_id = Param("id", "string")
        table = [
            Operation("ping", self._ping),
            Operation("getDebugInfo", self._get_debug_info),
            Operation("getManagedRootPath", self._get_managed_root_path),
            Operation("getAllUnits", self._get_all_units),
            Operation("getLoadedUnits", self._get_loaded_units),
            Operation("getUnitInfo", self._get_unit_info, (unit_id,)),
            Operation("setUnitStatus", self._set_unit_status, (unit_id, Param("enabled", "boolean"))),
            Operation("loadUnitById", self._load_unit_by_id, (unit_id,)),
            Operation("unregisterUnit", self._unregister_unit, (unit_id,), self_protected=True),
            Operation("reloadUnit", self._reload_unit, (unit_id,), self_protected=True),
            Operation("scanUnits", self._scan_units),
            Operation("loadDirectoryUnit", self._load_directory_unit, (Param("name", "string"),)),
            Operation(
                "uninstallUnit", self._uninstall_unit,
                (unit_id, Param("removeData", "boolean", optional=True)),
                self_protected=True,
            ),
            Operation("getUnitDataPath", self._get_unit_data_path, (unit_id,)),
        ]
        if enable_remote_transfer:
            table += [
                Operation("removeDir", self._remove_dir, (Param("path", "string"),)),
                Operation("writeFiles", self._write_files, (Param("fileList", "file_list"),)),
            ]
        for op in table:
            self._operations[op.name] = op

    @property
    def operation_names(self) -> List[str]:
        return sorted(self._operations)

    def greeting(self) -> dict:
        return {"version": SERVICE_VERSION, "unitCount": len(self.manager.list_units())}

    async def handle(self, request: Request) -> Response:
        op = self._operations.get(request.method)
        if op is None:
            logger.warning("Method not found: %s", safe_text(request.method, 80))
            return protocol.make_error(
                request.id, protocol.METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )

        error = validate_params(op, request.params)
        if error:
            logger.warning("Invalid params for %s: %s", op.name, error)
            return protocol.make_error(request.id, protocol.INVALID_PARAMS, f"Invalid params: {error}")

        if op.self_protected and request.params and request.params[0] == self.self_id:
            logger.warning("Refused %s against the debug service itself", op.name)
            return protocol.make_error(
                request.id, protocol.SELF_PROTECTED,
                f"Refusing to {op.name} the debug service itself ({self.self_id})",
            )

        try:
            result = await op.handler(*request.params)
        except Exception as e:
            message = safe_text(e)
            logger.error("%s failed: %s", op.name, message,
                         exc_info=not isinstance(e, (KeyError, SandboxViolation)))
            return protocol.make_error(request.id, protocol.OPERATION_FAILED, message)

        logger.debug("%s ok", op.name)
        return protocol.make_response(request.id, result)

    # --- Operations ---

    async def _ping(self):
        return "pong"

    async def _get_debug_info(self):
        units = self.manager.list_units()
        return HostInfo(
            version=SERVICE_VERSION,
            total_units=len(units),
            loaded_units=sum(1 for u in units if u.loaded),
            managed_root_path=self.manager.managed_root,
            uptime_seconds=round(time.monotonic() - self.started_at, 3),
        ).to_dict()

    async def _get_managed_root_path(self):
        return self.manager.managed_root

    async def _get_all_units(self):
        return [u.to_dict() for u in self.manager.list_units()]

    async def _get_loaded_units(self):
        return [u.to_dict() for u in self.manager.loaded_units()]

    async def _get_unit_info(self, unit_id):
        unit = self.manager.get_unit(unit_id)
        return unit.to_dict() if unit else None

    async def _set_unit_status(self, unit_id, enabled):
        await self.manager.set_unit_status(unit_id, enabled)
        return True

    async def _load_unit_by_id(self, unit_id):
        return await self.manager.load_unit(unit_id)

    async def _unregister_unit(self, unit_id):
        await self.manager.unregister_unit(unit_id)
        return True

    async def _reload_unit(self, unit_id):
        return await self.manager.reload_unit(unit_id)

    async def _scan_units(self):
        return await self.manager.scan_units()

    async def _load_directory_unit(self, name):
        return await self.manager.load_directory_unit(name)

    async def _uninstall_unit(self, unit_id, remove_data=False):
        await self.manager.uninstall_unit(unit_id, remove_data)
        return True

    async def _get_unit_data_path(self, unit_id):
        return self.manager.unit_data_path(unit_id)

    async def _remove_dir(self, path):
        return self._managed_root.remove_dir(path)

    async def _write_files(self, file_list):
        return self._managed_root.write_files(file_list)
