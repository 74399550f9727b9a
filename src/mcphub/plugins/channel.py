"""Worker Channel.

Frames the request/response protocol over one worker's stdin/stdout pair.
A single reader task demultiplexes replies by correlation id, so any number
of calls can be in flight on the same channel, each with its own timeout.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Optional

from .. import __version__
from ..errors import (
    CapabilityQueryFailed,
    HandshakeTimeout,
    InvocationTimeout,
    PluginError,
    ProtocolError,
    WorkerExited,
)
from . import protocol
from .models import CapabilityKind, CapabilitySet, InvocationFailure, InvocationResult

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, str, Dict[str, Any]], None]


class WorkerChannel:
    """RPC channel to one worker process."""

    def __init__(
        self,
        name: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        call_timeout_s: float = 30.0,
        on_notification: Optional[NotificationHandler] = None,
        client_name: str = "mcphub",
    ):
        self.name = name
        self.call_timeout_s = call_timeout_s
        self._reader = reader
        self._writer = writer
        self._on_notification = on_notification
        self._client_name = client_name
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False
        self._eof = asyncio.Event()

    def start(self) -> "WorkerChannel":
        """Start the reader task. Returns self for chaining."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"mcphub-channel:{self.name}"
            )
        return self

    @property
    def closed(self) -> bool:
        return self._closed or self._eof.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_eof(self) -> None:
        """Wait until the worker closes its end of the stream."""
        await self._eof.wait()

    # ------------------------------------------------------------------
    # Reader side
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError:
                    # Frame larger than the stream limit; the reader discards it
                    logger.warning("[%s] dropping oversized frame from worker", self.name)
                    continue
                except (ConnectionError, OSError) as e:
                    logger.debug("[%s] read failed: %s", self.name, e)
                    break
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    message = protocol.decode_message(line)
                except ProtocolError as e:
                    logger.warning("[%s] dropping malformed frame: %s", self.name, e.message)
                    continue
                self._dispatch(message)
        finally:
            self._eof.set()
            self._fail_pending(WorkerExited(f"Worker {self.name} closed its stream", plugin=self.name))

    def _dispatch(self, message: protocol.Message) -> None:
        if message.is_notification:
            method = message.params.get("method", "")
            params = message.params.get("params", {})
            if self._on_notification is not None:
                try:
                    self._on_notification(self.name, method, params)
                except Exception:
                    logger.exception("[%s] notification handler failed", self.name)
            else:
                logger.debug("[%s] notification %s: %s", self.name, method, params)
            return

        if message.id is None:
            logger.warning("[%s] uncorrelated %s frame: %s", self.name, message.kind, message.error)
            return

        future = self._pending.pop(message.id, None)
        if future is None:
            # Reply to a call that already timed out
            logger.debug("[%s] discarding late reply for id %s", self.name, message.id)
            return
        if not future.done():
            future.set_result(message)

    def _fail_pending(self, error: PluginError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Writer side
    # ------------------------------------------------------------------

    async def _send(self, payload: Dict[str, Any]) -> None:
        data = protocol.encode(payload)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError, RuntimeError) as e:
                raise WorkerExited(f"Cannot write to worker {self.name}: {e}", plugin=self.name, cause=e)

    async def _call(
        self,
        build: Callable[[int], Dict[str, Any]],
        timeout_s: Optional[float],
    ) -> protocol.Message:
        """Send one request and wait for its correlated reply.

        Raises:
            asyncio.TimeoutError: no reply within the timeout
            WorkerExited: the stream closed before or while waiting
            ProtocolError: the request could not be encoded
        """
        if self.closed:
            raise WorkerExited(f"Channel to {self.name} is closed", plugin=self.name)

        msg_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._send(build(msg_id))
            return await asyncio.wait_for(future, timeout_s or self.call_timeout_s)
        finally:
            self._pending.pop(msg_id, None)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def handshake(self, timeout_s: Optional[float] = None) -> Dict[str, Any]:
        """Identify the worker and confirm it speaks our protocol.

        Raises:
            HandshakeTimeout: on timeout, error reply, malformed reply or exit
        """
        timeout = timeout_s or self.call_timeout_s
        try:
            message = await self._call(
                lambda i: protocol.handshake_request(i, self._client_name, __version__),
                timeout,
            )
        except asyncio.TimeoutError:
            raise HandshakeTimeout(
                f"No handshake from {self.name} within {timeout}s", plugin=self.name
            ) from None
        except (WorkerExited, ProtocolError) as e:
            raise HandshakeTimeout(
                f"Handshake with {self.name} failed: {e.message}", plugin=self.name, cause=e
            ) from e

        if message.is_error:
            raise HandshakeTimeout(
                f"Worker {self.name} rejected handshake: {message.error['message']}",
                plugin=self.name,
            )
        try:
            return protocol.parse_handshake(protocol.validate_response(message, protocol.HANDSHAKE))
        except ProtocolError as e:
            raise HandshakeTimeout(
                f"Malformed handshake from {self.name}: {e.message}", plugin=self.name, cause=e
            ) from e

    async def query_capabilities(self, timeout_s: Optional[float] = None) -> CapabilitySet:
        """Fetch the worker's tools, resources and prompts. Never retries.

        Raises:
            CapabilityQueryFailed: on timeout, error reply, malformed reply or exit
        """
        timeout = timeout_s or self.call_timeout_s
        try:
            message = await self._call(lambda i: protocol.request(i, protocol.LIST_CAPABILITIES), timeout)
        except asyncio.TimeoutError:
            raise CapabilityQueryFailed(
                f"Capability query to {self.name} timed out after {timeout}s", plugin=self.name
            ) from None
        except (WorkerExited, ProtocolError) as e:
            raise CapabilityQueryFailed(
                f"Capability query to {self.name} failed: {e.message}", plugin=self.name, cause=e
            ) from e

        if message.is_error:
            raise CapabilityQueryFailed(
                f"Worker {self.name} refused capability query: {message.error['message']}",
                plugin=self.name,
            )
        try:
            return protocol.parse_capabilities(
                protocol.validate_response(message, protocol.LIST_CAPABILITIES)
            )
        except ProtocolError as e:
            raise CapabilityQueryFailed(
                f"Malformed capability list from {self.name}: {e.message}", plugin=self.name, cause=e
            ) from e

    async def invoke(
        self,
        local_name: str,
        arguments: Dict[str, Any],
        timeout_s: Optional[float] = None,
        kind: CapabilityKind = CapabilityKind.TOOL,
    ) -> InvocationResult:
        """Invoke one capability and return the worker's answer verbatim.

        Never raises for worker-side problems: timeouts, error replies and a
        lost stream all come back as failed results. A timeout leaves the
        channel open for other calls.
        """
        qualified = f"{self.name}.{local_name}"
        timeout = timeout_s or self.call_timeout_s
        try:
            message = await self._call(
                lambda i: protocol.invoke_request(i, local_name, arguments, kind),
                timeout,
            )
        except asyncio.TimeoutError:
            return InvocationResult.failed(InvocationTimeout(
                f"{qualified} did not answer within {timeout}s",
                plugin=self.name,
                qualified_name=qualified,
            ))
        except PluginError as e:
            e.plugin = e.plugin or self.name
            e.qualified_name = qualified
            return InvocationResult.failed(e)

        if message.is_error:
            return InvocationResult(
                success=False,
                error=InvocationFailure(
                    code=message.error["code"],
                    message=message.error["message"],
                    owner=self.name,
                    qualified_name=qualified,
                ),
            )
        if message.kind != protocol.INVOKE:
            return InvocationResult.failed(ProtocolError(
                f"Expected invoke reply from {self.name}, got {message.kind!r}",
                plugin=self.name,
                qualified_name=qualified,
            ))
        return InvocationResult.ok(message.result)

    async def request_shutdown(self, timeout_s: Optional[float] = None) -> bool:
        """Ask the worker to exit on its own. Returns True if it acknowledged."""
        if self.closed:
            return False
        try:
            await self._call(lambda i: protocol.request(i, protocol.SHUTDOWN), timeout_s)
        except (asyncio.TimeoutError, PluginError):
            return False
        return True

    async def close(self) -> None:
        """Release the stream and fail every pending call. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._fail_pending(WorkerExited(f"Channel to {self.name} closed", plugin=self.name))

        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError, RuntimeError):
            pass
