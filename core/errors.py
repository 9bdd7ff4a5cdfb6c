"""hotdeploy: Error taxonomy shared by host and clients."""

from __future__ import annotations
from typing import Any, Optional


def safe_text(value: Any, max_len: int = 200) -> str:
    """Sanitize untrusted text for logs and messages: strip CR/LF, truncate."""
    return str(value)[:max_len].replace('\r', ' ').replace('\n', ' ')


class HotDeployError(Exception):
    """Base class. Carries the method and unit identity involved, when known."""

    def __init__(self, message: str, method: Optional[str] = None, unit_id: Optional[str] = None):
        self.method = method
        self.unit_id = unit_id
        self.detail = message
        parts = []
        if method:
            parts.append(f"[{method}]")
        if unit_id:
            parts.append(f"({safe_text(unit_id, 100)})")
        parts.append(message)
        super().__init__(" ".join(parts))


class TransportError(HotDeployError):
    """Connect failure, handshake failure, or unexpected close."""

    def __init__(self, message: str, close_code: Optional[int] = None, **kwargs):
        self.close_code = close_code
        super().__init__(message, **kwargs)


class ProtocolError(HotDeployError):
    """A malformed envelope or a reply of the wrong shape. Recovered locally, never fatal."""
    pass


class RpcTimeout(HotDeployError):
    """No matching response arrived before the call's deadline."""

    def __init__(self, method: str, timeout: float, unit_id: Optional[str] = None):
        self.timeout = timeout
        super().__init__(f"no response within {timeout:g}s", method=method, unit_id=unit_id)


class RemoteError(HotDeployError):
    """The host answered with an error response."""

    def __init__(self, code: int, message: str, method: Optional[str] = None,
                 unit_id: Optional[str] = None):
        self.code = code
        self.remote_message = message
        super().__init__(f"remote error {code}: {safe_text(message)}", method=method, unit_id=unit_id)


class AuthRejection(HotDeployError):
    """The host closed the connection because the token did not match.

    Deliberately not a TransportError: callers must not reconnect.
    """
    pass


class DeployPreconditionError(HotDeployError):
    """A deploy could not start (no manifest identity, no transfer route)."""
    pass


class DeployError(HotDeployError):
    """A deploy started but the transfer or activation step failed."""
    pass


class SandboxViolation(HotDeployError):
    """A host-side path escaped the managed root."""
    pass
