"""hotdeploy: Data Models

Shared types for the host service and the deploy clients:
- DebugConfig: persisted host configuration (camelCase on disk)
- UnitManifest: identity record read from a unit's plugin.json
- UnitSummary / HostInfo: wire shapes returned by the host
- WatchTarget / DeployJob / DeployResult: client-side bookkeeping
- SecondaryArtifactSet: extra build output copied next to a unit
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any, Dict, List
import json
import os
import re
import stat
import time

MANIFEST_FILENAME = "plugin.json"
DEFAULT_ENTRY = "main.py"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8998

_MAX_MANIFEST_BYTES = 2 * 1024 * 1024
# Unit identities double as directory names under the managed root
_UNIT_ID_RE = re.compile(r'^[A-Za-z0-9@][A-Za-z0-9._@+-]*$')


def is_valid_unit_id(value: Any) -> bool:
    return (
        isinstance(value, str)
        and 0 < len(value) <= 214
        and value not in (".", "..")
        and bool(_UNIT_ID_RE.match(value))
    )


class ConnectionState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_GREETING = "AWAITING_GREETING"
    READY = "READY"


class AuthState(Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    REJECTED = "REJECTED"


class TransferMode(Enum):
    AUTO = "AUTO"
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"


class DeployTrigger(Enum):
    MANUAL = "MANUAL"
    BUILD = "BUILD"
    WATCH = "WATCH"


class RuntimeStatus(Enum):
    STOPPED = "stopped"
    LOADED = "loaded"
    ERROR = "error"


@dataclass
class DebugConfig:
    """Host service configuration. Stored as camelCase JSON."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    enable_auth: bool = False
    auth_token: str = ""

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("host must be a non-empty string")
        # bool is a subclass of int; reject it explicitly
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"port must be an integer, got {type(self.port).__name__}")
        if not (0 <= self.port <= 65535):
            raise ValueError(f"port out of range: {self.port}")
        if not isinstance(self.enable_auth, bool):
            raise ValueError("enableAuth must be a boolean")
        if not isinstance(self.auth_token, str):
            raise ValueError("authToken must be a string")

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "enableAuth": self.enable_auth,
            "authToken": self.auth_token,
        }

    @classmethod
    def from_dict(cls, data: dict, base: Optional[DebugConfig] = None) -> DebugConfig:
        """Overlay known keys from data onto base (or the defaults)."""
        base = base or cls()
        return cls(
            host=data.get("host", base.host),
            port=data.get("port", base.port),
            enable_auth=data.get("enableAuth", base.enable_auth),
            auth_token=data.get("authToken", base.auth_token),
        )

    @property
    def auth_active(self) -> bool:
        return self.enable_auth and bool(self.auth_token)


@dataclass
class UnitManifest:
    """Identity and entry point of a deployable unit."""
    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    main: str = DEFAULT_ENTRY

    def __post_init__(self):
        if not is_valid_unit_id(self.name):
            raise ValueError(f"Invalid unit name: {self.name!r}")
        main_norm = os.path.normpath(self.main)
        if os.path.isabs(self.main) or main_norm.split(os.sep)[0] == "..":
            raise ValueError(f"Unit entry must stay inside the unit directory: {self.main!r}")

    @classmethod
    def from_json(cls, manifest_path: str) -> UnitManifest:
        """Load a manifest file.

        Expected JSON format:
        {
            "name": "my-unit",
            "version": "1.0.0",
            "description": "...",
            "author": "...",
            "main": "main.py"
        }

        Raises FileNotFoundError when the file is absent and ValueError for
        anything malformed.
        """
        with open(manifest_path, 'rb') as f_raw:
            fd_stat = os.fstat(f_raw.fileno())
            if not stat.S_ISREG(fd_stat.st_mode):
                raise ValueError(
                    f"Unit manifest is not a regular file (mode={oct(fd_stat.st_mode)})"
                )
            if fd_stat.st_size > _MAX_MANIFEST_BYTES:
                raise ValueError(
                    f"Unit manifest too large ({fd_stat.st_size:,} bytes, "
                    f"limit {_MAX_MANIFEST_BYTES:,})"
                )
            raw = f_raw.read(_MAX_MANIFEST_BYTES + 1)
        try:
            data = json.loads(raw.decode('utf-8'))
        except RecursionError:
            raise ValueError(f"Deeply nested JSON in unit manifest {manifest_path!r}")
        except UnicodeDecodeError:
            raise ValueError(f"Unit manifest is not valid UTF-8: {manifest_path!r}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Unit manifest {manifest_path!r} is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise ValueError(
                f"Unit manifest must be a JSON object, got {type(data).__name__}"
            )
        if "name" not in data:
            raise ValueError(f"Missing required field 'name' in {manifest_path!r}")
        if not isinstance(data["name"], str) or not data["name"].strip():
            raise ValueError(
                f"Field 'name' must be a non-empty string, got {type(data['name']).__name__}"
            )

        optional = {}
        for key in ("version", "description", "author", "main"):
            if key in data:
                if not isinstance(data[key], str):
                    raise ValueError(
                        f"Field {key!r} must be a string, got {type(data[key]).__name__}"
                    )
                optional[key] = data[key]
        if "main" in optional and not optional["main"].strip():
            del optional["main"]

        return cls(name=data["name"].strip(), **optional)

    @classmethod
    def find(cls, directory: str) -> Optional[UnitManifest]:
        """Return the manifest in directory, or None if there is none."""
        path = os.path.join(directory, MANIFEST_FILENAME)
        if not os.path.isfile(path):
            return None
        return cls.from_json(path)


@dataclass
class UnitSummary:
    """One unit as the host reports it."""
    id: str
    file_id: str
    name: str
    version: str
    description: str
    author: str
    unit_path: str
    entry_path: str
    enabled: bool = False
    loaded: bool = False
    runtime_status: RuntimeStatus = RuntimeStatus.STOPPED
    runtime_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fileId": self.file_id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "unitPath": self.unit_path,
            "entryPath": self.entry_path,
            "enabled": self.enabled,
            "loaded": self.loaded,
            "runtimeStatus": self.runtime_status.value,
            "runtimeError": self.runtime_error,
        }


@dataclass
class HostInfo:
    """Result of getDebugInfo."""
    version: str
    total_units: int
    loaded_units: int
    managed_root_path: str
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "totalUnits": self.total_units,
            "loadedUnits": self.loaded_units,
            "managedRootPath": self.managed_root_path,
            "uptimeSeconds": self.uptime_seconds,
        }

    @classmethod
    def from_dict(cls, data: Any) -> HostInfo:
        if not isinstance(data, dict):
            raise ValueError(f"debug info must be an object, got {type(data).__name__}")
        root = data.get("managedRootPath")
        if not isinstance(root, str) or not root:
            raise ValueError("debug info is missing managedRootPath")
        try:
            return cls(
                version=str(data.get("version", "")),
                total_units=int(data.get("totalUnits", 0)),
                loaded_units=int(data.get("loadedUnits", 0)),
                managed_root_path=root,
                uptime_seconds=float(data.get("uptimeSeconds", 0.0)),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"debug info has a non-numeric count: {e}") from None


@dataclass
class WatchTarget:
    """A directory watched as one logical unit."""
    name: str
    root: str
    watch_handle: Any = None
    # asyncio.TimerHandle; at most one pending at a time
    pending_timer: Any = None

    def cancel_timer(self) -> None:
        if self.pending_timer is not None:
            self.pending_timer.cancel()
            self.pending_timer = None


@dataclass
class SecondaryArtifactSet:
    """Extra build output (e.g. a web UI) copied into <identity>/<subdir>."""
    name: str
    source_dir: str
    subdir: str
    build_command: Optional[List[str]] = None
    build_cwd: Optional[str] = None

    def __post_init__(self):
        if not self.subdir or os.path.isabs(self.subdir):
            raise ValueError(f"subdir must be a relative path: {self.subdir!r}")
        if ".." in os.path.normpath(self.subdir).split(os.sep):
            raise ValueError(f"subdir contains path traversal: {self.subdir!r}")
        if self.build_command is not None and not isinstance(self.build_command, list):
            raise ValueError("build_command must be a list of arguments")


@dataclass
class DeployJob:
    source_dir: str
    identity: str
    trigger: DeployTrigger = DeployTrigger.MANUAL
    created_at: float = field(default_factory=time.time)

    @property
    def target_name(self) -> str:
        return self.identity


@dataclass
class DeployResult:
    identity: str
    target_path: str
    transfer_mode: TransferMode
    activated: bool
    first_load: bool
    files_copied: int = 0
    secondary: Dict[str, bool] = field(default_factory=dict)
    duration_seconds: float = 0.0
