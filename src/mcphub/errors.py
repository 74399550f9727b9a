"""Error taxonomy for mcphub.

Every failure the supervisor knows about has a stable code. Lifecycle errors
(spawn, handshake, capability query) drive the restart policy and surface only
through ``status()``; invocation errors are converted into structured
failures and returned to the caller instead of being raised.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .plugins.models import InvocationFailure


class ErrorCode(str, Enum):
    """Stable error codes shared with workers and the transport layer."""
    PLUGIN_ERROR = "PLUGIN_ERROR"
    SPAWN_FAILURE = "SPAWN_FAILURE"
    HANDSHAKE_TIMEOUT = "HANDSHAKE_TIMEOUT"
    CAPABILITY_QUERY_FAILED = "CAPABILITY_QUERY_FAILED"
    DUPLICATE_CAPABILITY_NAME = "DUPLICATE_CAPABILITY_NAME"
    INVOCATION_TIMEOUT = "INVOCATION_TIMEOUT"
    OWNER_NOT_RUNNING = "OWNER_NOT_RUNNING"
    UNKNOWN_CAPABILITY = "UNKNOWN_CAPABILITY"
    ALREADY_MANAGED = "ALREADY_MANAGED"
    RESTART_BUDGET_EXHAUSTED = "RESTART_BUDGET_EXHAUSTED"
    NOT_MANAGED = "NOT_MANAGED"
    WORKER_EXITED = "WORKER_EXITED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    MANIFEST_ERROR = "MANIFEST_ERROR"
    # Raised inside workers, reported back over the wire
    TOOL_ERROR = "TOOL_ERROR"


class PluginError(Exception):
    """Base class for all supervisor errors."""
    code: ErrorCode = ErrorCode.PLUGIN_ERROR

    def __init__(
        self,
        message: str,
        *,
        plugin: Optional[str] = None,
        qualified_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.plugin = plugin
        self.qualified_name = qualified_name
        self.cause = cause

    def to_failure(self) -> "InvocationFailure":
        """Convert to the structured failure returned to callers."""
        from .plugins.models import InvocationFailure
        return InvocationFailure(
            code=self.code.value,
            message=self.message,
            owner=self.plugin,
            qualified_name=self.qualified_name,
        )

    def to_dict(self) -> dict:
        data = {"code": self.code.value, "message": self.message}
        if self.plugin:
            data["plugin"] = self.plugin
        if self.qualified_name:
            data["qualified_name"] = self.qualified_name
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class SpawnFailure(PluginError):
    """The operating system could not create the worker process."""
    code = ErrorCode.SPAWN_FAILURE


class HandshakeTimeout(PluginError):
    """No valid handshake reply arrived within the call timeout."""
    code = ErrorCode.HANDSHAKE_TIMEOUT


class CapabilityQueryFailed(PluginError):
    """The capability list could not be retrieved or was malformed."""
    code = ErrorCode.CAPABILITY_QUERY_FAILED


class DuplicateCapabilityName(PluginError):
    """A worker advertised the same local name twice in one batch."""
    code = ErrorCode.DUPLICATE_CAPABILITY_NAME


class InvocationTimeout(PluginError):
    code = ErrorCode.INVOCATION_TIMEOUT


class OwnerNotRunning(PluginError):
    code = ErrorCode.OWNER_NOT_RUNNING


class UnknownCapability(PluginError):
    code = ErrorCode.UNKNOWN_CAPABILITY


class AlreadyManaged(PluginError):
    code = ErrorCode.ALREADY_MANAGED


class RestartBudgetExhausted(PluginError):
    """Terminal failure; only a manual restart clears it."""
    code = ErrorCode.RESTART_BUDGET_EXHAUSTED


class NotManaged(PluginError):
    code = ErrorCode.NOT_MANAGED


class WorkerExited(PluginError):
    """The worker's stream closed while a call was pending."""
    code = ErrorCode.WORKER_EXITED


class ProtocolError(PluginError):
    """A frame failed validation at the channel boundary."""
    code = ErrorCode.PROTOCOL_ERROR


class ManifestError(PluginError):
    code = ErrorCode.MANIFEST_ERROR
