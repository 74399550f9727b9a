"""Worker runtime.

The plugin side of the stdio protocol. A plugin is a plain script::

    from mcphub.worker import WorkerApp

    app = WorkerApp("hello-world", version="1.0.0")

    @app.tool(description="Say hello")
    def say_hello(name: str = "World") -> dict:
        return {"message": f"Hello, {name}!"}

    if __name__ == "__main__":
        app.run()

stdout carries protocol frames only; everything the plugin logs goes to
stderr, where the supervisor picks it up.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import sys
import threading
import typing
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Set, Tuple

from .errors import ErrorCode, ProtocolError
from .plugins import protocol
from .plugins.models import Capability, CapabilityKind, CapabilitySet

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}


def schema_from_signature(func: Callable) -> Dict[str, Any]:
    """JSON schema for a handler's keyword arguments."""
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in inspect.signature(func).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        prop: Dict[str, Any] = {}
        json_type = _JSON_TYPES.get(typing.get_origin(hints.get(param.name)) or hints.get(param.name))
        if json_type:
            prop["type"] = json_type
        if param.default is param.empty:
            required.append(param.name)
        else:
            prop["default"] = param.default
        properties[param.name] = prop

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


@dataclass
class Handler:
    capability: Capability
    func: Callable[..., Any]

    async def __call__(self, arguments: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(**arguments)
        # Sync handlers must not block other in-flight requests
        return await asyncio.to_thread(self.func, **arguments)


class WorkerApp:
    """Registry of handlers plus the stdio request loop."""

    def __init__(self, name: Optional[str] = None, version: str = "0.0.0"):
        self.name = name or os.environ.get("PLUGIN_NAME") or "plugin"
        self.version = version
        self._handlers: Dict[Tuple[CapabilityKind, str], Handler] = {}
        self._order: List[Tuple[CapabilityKind, str]] = []
        self._out: Optional[BinaryIO] = None
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self, capability: Capability, func: Callable) -> None:
        key = (capability.kind, capability.name)
        if key not in self._handlers:
            self._order.append(key)
        self._handlers[key] = Handler(capability, func)

    def tool(
        self,
        name: Optional[str] = None,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
    ):
        """Register a tool. Arguments arrive as keyword arguments."""
        def decorator(func: Callable) -> Callable:
            self._register(Capability(
                name=name or func.__name__,
                kind=CapabilityKind.TOOL,
                description=description or inspect.getdoc(func) or "",
                schema={"inputSchema": input_schema or schema_from_signature(func)},
            ), func)
            return func
        return decorator

    def resource(
        self,
        uri: str,
        name: Optional[str] = None,
        description: str = "",
        mime_type: str = "text/plain",
    ):
        """Register a resource. The handler takes no arguments."""
        def decorator(func: Callable) -> Callable:
            self._register(Capability(
                name=name or func.__name__,
                kind=CapabilityKind.RESOURCE,
                description=description or inspect.getdoc(func) or "",
                schema={"uri": uri, "mimeType": mime_type},
            ), func)
            return func
        return decorator

    def prompt(
        self,
        name: Optional[str] = None,
        description: str = "",
        arguments: Optional[List[Dict[str, Any]]] = None,
    ):
        """Register a prompt template."""
        def decorator(func: Callable) -> Callable:
            if arguments is None:
                schema = schema_from_signature(func)
                required = set(schema.get("required", []))
                args = [{"name": n, "required": n in required} for n in schema["properties"]]
            else:
                args = arguments
            self._register(Capability(
                name=name or func.__name__,
                kind=CapabilityKind.PROMPT,
                description=description or inspect.getdoc(func) or "",
                schema={"arguments": args},
            ), func)
            return func
        return decorator

    def capabilities(self) -> CapabilitySet:
        caps = CapabilitySet()
        for kind, name in self._order:
            capability = self._handlers[(kind, name)].capability
            {
                CapabilityKind.TOOL: caps.tools,
                CapabilityKind.RESOURCE: caps.resources,
                CapabilityKind.PROMPT: caps.prompts,
            }[kind].append(capability)
        return caps

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _write(self, payload: Dict[str, Any]) -> None:
        if self._out is None:
            return
        try:
            data = protocol.encode(payload)
        except ProtocolError as e:
            data = protocol.encode(protocol.error_response(payload.get("id"), ErrorCode.PROTOCOL_ERROR, e.message))
        with self._write_lock:
            self._out.write(data)
            self._out.flush()

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification to the supervisor. Safe from handler threads."""
        self._write(protocol.notification(method, params))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(self, message: protocol.Message) -> Dict[str, Any]:
        """Answer one request frame."""
        if message.kind == protocol.HANDSHAKE:
            return protocol.response(message.id, protocol.HANDSHAKE, {
                "name": self.name,
                "version": self.version,
                "protocol": protocol.PROTOCOL_VERSION,
            })

        if message.kind == protocol.LIST_CAPABILITIES:
            return protocol.response(
                message.id,
                protocol.LIST_CAPABILITIES,
                protocol.capabilities_to_wire(self.capabilities()),
            )

        if message.kind == protocol.SHUTDOWN:
            return protocol.response(message.id, protocol.SHUTDOWN, {"ok": True})

        if message.kind == protocol.INVOKE:
            return await self._invoke(message)

        return protocol.error_response(
            message.id, ErrorCode.PROTOCOL_ERROR, f"Unexpected {message.kind!r} frame"
        )

    async def _invoke(self, message: protocol.Message) -> Dict[str, Any]:
        name = message.params.get("name")
        arguments = message.params.get("arguments") or {}
        try:
            kind = CapabilityKind(message.params.get("capability", CapabilityKind.TOOL.value))
        except ValueError:
            kind = None

        handler = self._handlers.get((kind, name)) if kind else None
        if handler is None:
            return protocol.error_response(
                message.id, ErrorCode.UNKNOWN_CAPABILITY, f"Unknown capability: {name}"
            )
        if not isinstance(arguments, dict):
            return protocol.error_response(message.id, ErrorCode.TOOL_ERROR, "Arguments must be an object")

        try:
            result = await handler(arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("%s %s failed", kind.value, name)
            return protocol.error_response(message.id, ErrorCode.TOOL_ERROR, str(e) or type(e).__name__)
        return protocol.response(message.id, protocol.INVOKE, result)

    # ------------------------------------------------------------------
    # Request loop
    # ------------------------------------------------------------------

    async def serve(self, reader: asyncio.StreamReader, out: BinaryIO) -> None:
        """Process frames from ``reader`` until shutdown or EOF.

        Each request runs in its own task, so slow handlers do not hold up
        later requests; replies are written in completion order.
        """
        self._out = out
        tasks: Set[asyncio.Task] = set()
        done = asyncio.Event()

        async def run_one(message: protocol.Message) -> None:
            reply = await self.handle(message)
            self._write(reply)
            if message.kind == protocol.SHUTDOWN:
                done.set()

        async def read_frames() -> None:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("Dropping oversized frame")
                    continue
                if not line:
                    return
                if not line.strip():
                    continue
                try:
                    message = protocol.decode_message(line.strip())
                except ProtocolError as e:
                    self._write(protocol.error_response(None, ErrorCode.PROTOCOL_ERROR, e.message))
                    continue
                if message.kind not in protocol.REQUEST_KINDS or message.id is None:
                    logger.debug("Ignoring %s frame", message.kind)
                    continue
                task = asyncio.create_task(run_one(message))
                tasks.add(task)
                task.add_done_callback(tasks.discard)

        reading = asyncio.create_task(read_frames())
        waiting = asyncio.create_task(done.wait())
        try:
            await asyncio.wait({reading, waiting}, return_when=asyncio.FIRST_COMPLETED)
            if reading.done() and not done.is_set() and tasks:
                # EOF: finish what was already accepted
                await asyncio.gather(*list(tasks), return_exceptions=True)
        finally:
            pending = [reading, waiting, *tasks]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._out = None
        logger.debug("Worker %s exiting", self.name)

    async def serve_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=protocol.MAX_FRAME_BYTES)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        await self.serve(reader, sys.stdout.buffer)

    def run(self) -> None:
        """Serve on stdin/stdout until shutdown or EOF."""
        if not logging.getLogger().handlers:
            logging.basicConfig(
                stream=sys.stderr,
                level=os.environ.get("LOG_LEVEL", "INFO").upper(),
                format=f"%(levelname)s [{self.name}] %(message)s",
            )
        try:
            asyncio.run(self.serve_stdio())
        except KeyboardInterrupt:
            pass
