"""Process Supervisor.

Owns every worker's operating-system process and its WorkerRecord:
spawns workers, watches them exit, applies the restart policy and drives each
worker's channel through handshake and capability negotiation.

State machine per record::

    starting -> running -> failed -> starting   (policy permits a restart)
                                  \\-> stopped    (manual stop)
    running -> stopping -> stopped              (graceful stop)

All transitions of one record happen while holding ``record.lock``, so they
are strictly sequential; different records never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Set

from ..errors import (
    AlreadyManaged,
    DuplicateCapabilityName,
    NotManaged,
    PluginError,
    RestartBudgetExhausted,
    SpawnFailure,
    WorkerExited,
)
from . import protocol
from .channel import WorkerChannel
from .events import STATE_EVENTS, EventBus, EventKind, LifecycleEvent
from .models import CapabilitySet, PluginDescriptor, RestartPolicy, WorkerRecord, WorkerState, utcnow
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)

# Time between terminate() and kill() once the graceful wait has run out
TERMINATE_GRACE_S = 2.0


def should_restart(descriptor: PluginDescriptor, restart_count: int) -> bool:
    """Restart decision for a worker that just failed."""
    if descriptor.restart_policy == RestartPolicy.ALWAYS:
        return True
    if descriptor.restart_policy == RestartPolicy.ON_FAILURE:
        return restart_count < descriptor.max_restarts
    return False


class ProcessSupervisor:
    """Manages worker processes and their lifecycle.

    Responsibilities:
    - Spawn workers and negotiate capabilities
    - Observe exits and apply restart policies
    - Graceful and forced termination
    - Publish lifecycle events and status
    """

    def __init__(
        self,
        registry: Optional[CapabilityRegistry] = None,
        events: Optional[EventBus] = None,
    ):
        self._registry = registry or CapabilityRegistry()
        self._registry.bind(self.get)
        self._events = events or EventBus()
        self._records: Dict[str, WorkerRecord] = {}
        self._restart_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def events(self) -> EventBus:
        return self._events

    # ------------------------------------------------------------------
    # Record table
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[WorkerRecord]:
        """Read-only view of a worker record."""
        return self._records.get(name)

    def _require(self, name: str) -> WorkerRecord:
        record = self._records.get(name)
        if record is None:
            raise NotManaged(f"Plugin {name} is not managed", plugin=name)
        return record

    def records(self) -> List[WorkerRecord]:
        return list(self._records.values())

    def running(self) -> List[WorkerRecord]:
        return [r for r in self._records.values() if r.state == WorkerState.RUNNING]

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-worker status for the transport layer and the CLI."""
        return {name: record.to_status() for name, record in self._records.items()}

    # ------------------------------------------------------------------
    # Public lifecycle operations
    # ------------------------------------------------------------------

    async def start(self, descriptor: PluginDescriptor) -> WorkerRecord:
        """Create a record for ``descriptor`` and launch its worker.

        Startup failures are not raised; they go through the restart policy
        and show up in ``status()``.

        Raises:
            AlreadyManaged: a record with that name already exists
        """
        if descriptor.name in self._records:
            raise AlreadyManaged(f"Plugin {descriptor.name} is already managed", plugin=descriptor.name)

        record = WorkerRecord(descriptor=descriptor)
        self._records[descriptor.name] = record
        async with record.lock:
            await self._launch(record)
        return record

    async def stop(self, name: str) -> None:
        """Gracefully stop a worker, forcing termination after its call timeout.

        Idempotent for records that are already stopped.
        """
        record = self._require(name)
        self._cancel_restart(name)
        async with record.lock:
            await self._stop_locked(record)

    async def restart(self, name: str) -> WorkerRecord:
        """Stop and start again with the restart counter reset to zero."""
        record = self._require(name)
        await self.stop(name)
        async with record.lock:
            if self._records.get(name) is not record:
                raise NotManaged(f"Plugin {name} was unloaded during restart", plugin=name)
            record.restart_count = 0
            record.exhausted = False
            record.last_error = None
            logger.info("Manual restart of %s", name)
            await self._launch(record)
        return record

    async def unload(self, name: str) -> None:
        """Stop a worker and forget its record."""
        record = self._require(name)
        await self.stop(name)
        async with record.lock:
            if self._records.get(name) is record:
                del self._records[name]
                self._registry.retract(name)
                self._events.publish(LifecycleEvent(
                    name=name,
                    kind=EventKind.UNLOADED,
                    state=record.state,
                    restart_count=record.restart_count,
                ))
                logger.info("Unloaded %s", name)

    async def report_failure(
        self,
        name: str,
        error: PluginError,
        generation: Optional[int] = None,
    ) -> bool:
        """Feed an external failure (e.g. a failed health probe) into the restart path.

        Ignored unless the worker is still running in the given generation.
        Returns True if the failure was applied.
        """
        record = self._records.get(name)
        if record is None:
            return False
        async with record.lock:
            if generation is not None and record.generation != generation:
                return False
            if record.state != WorkerState.RUNNING:
                return False
            logger.warning("Plugin %s reported unhealthy: %s", name, error.message)
            await self._fail_locked(record, error)
            return True

    async def refresh_capabilities(
        self,
        name: str,
        capabilities: CapabilitySet,
        generation: Optional[int] = None,
    ) -> bool:
        """Replace a running worker's snapshot and catalog entries.

        Ignored unless the worker is still running in the given generation.
        A batch with duplicate names fails the worker like it would at startup.
        Returns True if the snapshot was replaced.
        """
        record = self._records.get(name)
        if record is None:
            return False
        async with record.lock:
            if generation is not None and record.generation != generation:
                return False
            if record.state != WorkerState.RUNNING:
                return False
            try:
                self._registry.ingest(name, capabilities)
            except DuplicateCapabilityName as e:
                await self._fail_locked(record, e)
                return False
            record.capabilities = capabilities
            return True

    async def shutdown(self) -> None:
        """Stop every worker and return once all of them have exited."""
        logger.info("Shutting down %d plugins...", len(self._records))
        self._closing = True
        for name in list(self._restart_tasks):
            self._cancel_restart(name)

        async def stop_quietly(name: str) -> None:
            try:
                await self.stop(name)
            except PluginError as e:
                logger.error("Error stopping plugin %s: %s", name, e.message)

        await asyncio.gather(*(stop_quietly(name) for name in list(self._records)))

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Transitions (record.lock must be held)
    # ------------------------------------------------------------------

    def _transition(
        self,
        record: WorkerRecord,
        state: WorkerState,
        error: Optional[PluginError] = None,
        terminal: bool = False,
    ) -> None:
        record.state = state
        record.last_transition_at = utcnow()
        if state != WorkerState.RUNNING:
            self._registry.retract(record.name)

        if state == WorkerState.FAILED:
            log = logger.error if terminal else logger.warning
            log("Plugin %s failed: %s", record.name, error.message if error else "unknown error")
        else:
            logger.info("Plugin %s is %s", record.name, state.value)

        self._events.publish(LifecycleEvent(
            name=record.name,
            kind=STATE_EVENTS[state],
            state=state,
            restart_count=record.restart_count,
            at=record.last_transition_at,
            error=error.message if error else None,
            terminal=terminal,
        ))

    async def _launch(self, record: WorkerRecord) -> None:
        """Enter ``starting``, spawn, handshake, query and ingest."""
        record.generation += 1
        generation = record.generation
        descriptor = record.descriptor
        self._transition(record, WorkerState.STARTING)

        try:
            process = await self._spawn(descriptor)
        except SpawnFailure as e:
            await self._fail_locked(record, e)
            return

        record.process = process
        channel = WorkerChannel(
            descriptor.name,
            process.stdout,
            process.stdin,
            call_timeout_s=descriptor.call_timeout_s,
            on_notification=self._on_notification,
        ).start()
        record.channel = channel
        self._spawn_task(self._watch_exit(record, process, generation), f"watch:{descriptor.name}")
        self._spawn_task(self._drain_stderr(descriptor.name, process.stderr), f"stderr:{descriptor.name}")

        try:
            record.server_info = await channel.handshake()
            capabilities = await channel.query_capabilities()
            self._registry.ingest(descriptor.name, capabilities)
        except PluginError as e:
            await self._fail_locked(record, e)
            return

        record.capabilities = capabilities
        record.last_error = None
        self._transition(record, WorkerState.RUNNING)
        logger.info(
            "Loaded capabilities for %s: %d tools, %d resources, %d prompts",
            descriptor.name,
            len(capabilities.tools),
            len(capabilities.resources),
            len(capabilities.prompts),
        )

    async def _fail_locked(self, record: WorkerRecord, error: PluginError) -> None:
        """Move to ``failed`` and either schedule a restart or give up."""
        descriptor = record.descriptor
        error.plugin = error.plugin or descriptor.name
        restart = should_restart(descriptor, record.restart_count) and not self._closing

        if not restart and descriptor.restart_policy != RestartPolicy.NEVER and not self._closing:
            error = RestartBudgetExhausted(
                f"Plugin {descriptor.name} gave up after {record.restart_count} restarts: {error.message}",
                plugin=descriptor.name,
                cause=error,
            )

        record.last_error = error
        record.exhausted = not restart
        self._transition(record, WorkerState.FAILED, error=error, terminal=not restart)
        await self._teardown(record)

        if restart:
            record.restart_count += 1
            logger.info(
                "Restarting plugin %s in %.1fs (attempt %d)",
                descriptor.name,
                descriptor.restart_delay_s,
                record.restart_count,
            )
            self._schedule_restart(record, record.generation)
        else:
            logger.error("Plugin %s will not be restarted", descriptor.name)

    async def _stop_locked(self, record: WorkerRecord) -> None:
        if record.state == WorkerState.STOPPED:
            return
        record.generation += 1

        if record.state == WorkerState.FAILED:
            await self._teardown(record)
            self._transition(record, WorkerState.STOPPED)
            return

        self._transition(record, WorkerState.STOPPING)
        channel, process = record.channel, record.process
        record.channel = None
        record.process = None

        timeout = record.descriptor.call_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        if channel is not None:
            await channel.request_shutdown(timeout)
            await channel.close()
        if process is not None:
            await self._terminate(record.name, process, max(deadline - loop.time(), 0.1))

        self._transition(record, WorkerState.STOPPED)

    async def _teardown(self, record: WorkerRecord) -> None:
        """Release the channel and make sure the process is gone."""
        channel, process = record.channel, record.process
        record.channel = None
        record.process = None
        if channel is not None:
            await channel.close()
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    # ------------------------------------------------------------------
    # Restart timers
    # ------------------------------------------------------------------

    def _schedule_restart(self, record: WorkerRecord, generation: int) -> None:
        task = asyncio.create_task(
            self._restart_later(record, generation), name=f"mcphub-restart:{record.name}"
        )
        self._restart_tasks[record.name] = task

        def _forget(t: asyncio.Task, name: str = record.name) -> None:
            if self._restart_tasks.get(name) is t:
                del self._restart_tasks[name]

        task.add_done_callback(_forget)

    def _cancel_restart(self, name: str) -> None:
        task = self._restart_tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    async def _restart_later(self, record: WorkerRecord, generation: int) -> None:
        await asyncio.sleep(record.descriptor.restart_delay_s)
        async with record.lock:
            if (
                self._closing
                or self._records.get(record.name) is not record
                or record.generation != generation
                or record.state != WorkerState.FAILED
            ):
                return
            await self._launch(record)

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _spawn(self, descriptor: PluginDescriptor) -> asyncio.subprocess.Process:
        env = {
            **os.environ,
            **descriptor.env,
            "PLUGIN_NAME": descriptor.name,
            "PLUGIN_PATH": descriptor.working_dir or "",
        }
        argv = descriptor.argv
        logger.debug("Spawning %s: %s", descriptor.name, " ".join(argv))
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=descriptor.working_dir,
                limit=protocol.MAX_FRAME_BYTES,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(
                f"Cannot start {descriptor.name} ({argv[0]}): {e}", plugin=descriptor.name, cause=e
            ) from e

    async def _terminate(self, name: str, process: asyncio.subprocess.Process, timeout_s: float) -> None:
        if process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout_s)
            return
        except asyncio.TimeoutError:
            logger.warning("Plugin %s did not exit within %.1fs, terminating it", name, timeout_s)
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), TERMINATE_GRACE_S)
            return
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("Plugin %s ignored SIGTERM, killing it", name)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    async def _watch_exit(
        self,
        record: WorkerRecord,
        process: asyncio.subprocess.Process,
        generation: int,
    ) -> None:
        returncode = await process.wait()
        async with record.lock:
            if record.generation != generation or record.state not in (
                WorkerState.STARTING,
                WorkerState.RUNNING,
            ):
                return
            logger.info("Plugin %s exited with code %s", record.name, returncode)
            await self._fail_locked(record, WorkerExited(
                f"Worker {record.name} exited with code {returncode}", plugin=record.name
            ))

    async def _drain_stderr(self, name: str, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("[%s] stderr line over size limit skipped", name)
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("[%s] %s", name, text)

    def _on_notification(self, name: str, method: str, params: Dict[str, Any]) -> None:
        logger.info("[%s] %s %s", name, method, params)

    def _spawn_task(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"mcphub-{label}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
