"""hotdeploy: JSON-RPC 2.0 message framing

One envelope per WebSocket text frame. decode() never raises: anything that
is not a well-formed Request, Response or Notification comes back as None and
the caller drops it.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

logger = logging.getLogger("hotdeploy.protocol")

JSONRPC_VERSION = "2.0"
MAX_FRAME_BYTES = 64 * 1024 * 1024  # writeFiles frames carry base64 payloads

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Application codes
OPERATION_FAILED = -32000
SELF_PROTECTED = -32001

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_UNAUTHORIZED = 4001

GREETING_METHOD = "welcome"
EVENT_METHOD = "event"


@dataclass
class Request:
    id: int
    method: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method,
                "params": self.params}


@dataclass
class Response:
    id: int
    result: Any = None
    error: Optional[dict] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"jsonrpc": JSONRPC_VERSION, "id": self.id, "error": self.error}
        return {"jsonrpc": JSONRPC_VERSION, "id": self.id, "result": self.result}


@dataclass
class Notification:
    method: str
    params: Any = None

    def to_dict(self) -> dict:
        msg = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            msg["params"] = self.params
        return msg


Envelope = Union[Request, Response, Notification]


def make_response(req_id: int, result: Any) -> Response:
    return Response(id=req_id, result=result)


def make_error(req_id: int, code: int, message: str) -> Response:
    return Response(id=req_id, error={"code": code, "message": message})


def encode(envelope: Envelope) -> str:
    return json.dumps(envelope.to_dict(), separators=(",", ":"), default=str)


def _is_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def classify(msg: Any) -> Optional[Envelope]:
    """Turn a parsed JSON value into an envelope, or None if it is not one."""
    if not isinstance(msg, dict) or msg.get("jsonrpc") != JSONRPC_VERSION:
        return None

    method = msg.get("method")
    has_id = "id" in msg

    if method is not None:
        if not isinstance(method, str) or not method:
            return None
        params = msg.get("params", [])
        if has_id:
            if not _is_id(msg["id"]):
                return None
            if params is None:
                params = []
            if not isinstance(params, list):
                return None
            return Request(id=msg["id"], method=method, params=params)
        return Notification(method=method, params=msg.get("params"))

    if not has_id or not _is_id(msg["id"]):
        return None
    has_result = "result" in msg
    error = msg.get("error")
    if error is not None:
        if (not isinstance(error, dict) or not _is_id(error.get("code"))
                or not isinstance(error.get("message", ""), str)):
            return None
        return Response(id=msg["id"], error={"code": error["code"],
                                            "message": error.get("message", "")})
    if not has_result:
        return None
    return Response(id=msg["id"], result=msg["result"])


def decode(raw: Union[str, bytes]) -> Optional[Envelope]:
    if isinstance(raw, (bytes, bytearray)):
        if len(raw) > MAX_FRAME_BYTES:
            logger.warning("Dropping oversized frame (%d bytes)", len(raw))
            return None
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Dropping frame that is not valid UTF-8")
            return None
    elif len(raw) > MAX_FRAME_BYTES:
        logger.warning("Dropping oversized frame (%d chars)", len(raw))
        return None
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, RecursionError):
        logger.debug("Dropping unparsable frame")
        return None
    envelope = classify(msg)
    if envelope is None:
        logger.debug("Dropping frame with unrecognized envelope shape")
    return envelope
