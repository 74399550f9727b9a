"""Worker wire protocol.

Newline-delimited JSON frames exchanged over a worker's stdin/stdout:

    -> {"id": 1, "kind": "handshake", "client": {...}, "protocol": "1"}
    <- {"id": 1, "kind": "handshake", "result": {"name": "echo", "protocol": "1"}}
    -> {"id": 2, "kind": "listCapabilities"}
    <- {"id": 2, "kind": "listCapabilities", "result": {"tools": [...], ...}}
    -> {"id": 3, "kind": "invoke", "capability": "tool", "name": "echo", "arguments": {}}
    <- {"id": 3, "kind": "error", "error": {"code": "TOOL_ERROR", "message": "..."}}
    <- {"kind": "notification", "method": "log", "params": {...}}

Requests carry a correlation id; any number may be outstanding per stream and
responses may arrive in any order. Every inbound frame is validated here so
nothing downstream has to trust the worker.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import ErrorCode, ProtocolError
from .models import Capability, CapabilityKind, CapabilitySet

PROTOCOL_VERSION = "1"
MAX_FRAME_BYTES = 4 * 1024 * 1024

HANDSHAKE = "handshake"
LIST_CAPABILITIES = "listCapabilities"
INVOKE = "invoke"
SHUTDOWN = "shutdown"
ERROR = "error"
NOTIFICATION = "notification"

REQUEST_KINDS = frozenset({HANDSHAKE, LIST_CAPABILITIES, INVOKE, SHUTDOWN})
MESSAGE_KINDS = REQUEST_KINDS | {ERROR, NOTIFICATION}

_CAPABILITY_SECTIONS = (
    ("tools", CapabilityKind.TOOL),
    ("resources", CapabilityKind.RESOURCE),
    ("prompts", CapabilityKind.PROMPT),
)


@dataclass
class Message:
    """One decoded frame."""
    kind: str
    id: Optional[int] = None
    result: Any = None
    error: Optional[Dict[str, str]] = None
    params: Dict[str, Any] = field(default_factory=dict)   # request/notification members

    @property
    def is_error(self) -> bool:
        return self.kind == ERROR

    @property
    def is_notification(self) -> bool:
        return self.kind == NOTIFICATION


def encode(payload: Dict[str, Any]) -> bytes:
    """Encode one frame, newline terminated."""
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    raw = data.encode("utf-8") + b"\n"
    if len(raw) > MAX_FRAME_BYTES:
        raise ProtocolError(f"Frame of {len(raw)} bytes exceeds limit of {MAX_FRAME_BYTES}")
    return raw


def request(msg_id: int, kind: str, **members: Any) -> Dict[str, Any]:
    if kind not in REQUEST_KINDS:
        raise ProtocolError(f"Not a request kind: {kind}")
    return {"id": msg_id, "kind": kind, **members}


def handshake_request(msg_id: int, client_name: str, client_version: str) -> Dict[str, Any]:
    return request(
        msg_id,
        HANDSHAKE,
        client={"name": client_name, "version": client_version},
        protocol=PROTOCOL_VERSION,
    )


def invoke_request(
    msg_id: int,
    name: str,
    arguments: Dict[str, Any],
    kind: CapabilityKind = CapabilityKind.TOOL,
) -> Dict[str, Any]:
    return request(msg_id, INVOKE, capability=kind.value, name=name, arguments=arguments)


def response(msg_id: int, kind: str, result: Any) -> Dict[str, Any]:
    return {"id": msg_id, "kind": kind, "result": result}


def error_response(msg_id: Optional[int], code: str, message: str) -> Dict[str, Any]:
    if isinstance(code, ErrorCode):
        code = code.value
    return {"id": msg_id, "kind": ERROR, "error": {"code": code, "message": message}}


def notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"kind": NOTIFICATION, "method": method, "params": params or {}}


def decode_message(line: bytes | str) -> Message:
    """Decode and validate one inbound frame.

    Raises:
        ProtocolError: malformed JSON, unknown kind, or missing members
    """
    if isinstance(line, bytes):
        if len(line) > MAX_FRAME_BYTES:
            raise ProtocolError("Frame exceeds size limit")
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not UTF-8: {e}") from e

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")

    kind = data.get("kind")
    if kind not in MESSAGE_KINDS:
        raise ProtocolError(f"Unknown message kind: {kind!r}")

    msg_id = data.get("id")
    if msg_id is not None and (isinstance(msg_id, bool) or not isinstance(msg_id, int)):
        raise ProtocolError(f"Correlation id must be an integer, got {msg_id!r}")

    if kind == NOTIFICATION:
        method = data.get("method")
        if not isinstance(method, str):
            raise ProtocolError("Notification without a method")
        params = data.get("params") or {}
        return Message(kind=kind, params={"method": method, "params": params})

    if kind == ERROR:
        err = data.get("error")
        if not isinstance(err, dict) or not isinstance(err.get("message"), str):
            raise ProtocolError("Error frame without error.message")
        return Message(
            kind=kind,
            id=msg_id,
            error={"code": str(err.get("code", ErrorCode.PLUGIN_ERROR.value)), "message": err["message"]},
        )

    members = {k: v for k, v in data.items() if k not in ("id", "kind", "result")}
    return Message(kind=kind, id=msg_id, result=data.get("result"), params=members)


def validate_response(message: Message, expected_kind: str) -> Any:
    """Check a correlated reply and return its result payload."""
    if message.id is None:
        raise ProtocolError("Response without correlation id")
    if message.kind != expected_kind:
        raise ProtocolError(f"Expected {expected_kind!r} response, got {message.kind!r}")
    if message.result is None:
        raise ProtocolError(f"{expected_kind!r} response without result")
    return message.result


def parse_handshake(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict) or not isinstance(result.get("name"), str):
        raise ProtocolError("Handshake result must include a worker name")
    version = str(result.get("protocol", PROTOCOL_VERSION))
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported protocol version {version!r}")
    return result


def parse_capabilities(result: Any) -> CapabilitySet:
    """Validate a listCapabilities result into a CapabilitySet."""
    if not isinstance(result, dict):
        raise ProtocolError("Capability list must be an object")

    caps = CapabilitySet()
    for section, kind in _CAPABILITY_SECTIONS:
        items = result.get(section, [])
        if items is None:
            items = []
        if not isinstance(items, list):
            raise ProtocolError(f"'{section}' must be a list")
        target = getattr(caps, section)
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str) or not item["name"]:
                raise ProtocolError(f"Every entry in '{section}' needs a non-empty string name")
            target.append(Capability.from_wire(kind, item))
    return caps


def capabilities_to_wire(caps: CapabilitySet) -> Dict[str, Any]:
    return {
        section: [c.to_wire() for c in getattr(caps, section)]
        for section, _ in _CAPABILITY_SECTIONS
    }
