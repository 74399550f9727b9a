"""Health Monitor.

Periodically probes every running worker with a capability query. Each
probe is its own task with its own timeout, so a stalled worker never delays
the probes of the others. A successful probe refreshes the worker's
capability snapshot; a failed probe is handed to the supervisor's failure
path exactly like a crash.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import CapabilityQueryFailed, PluginError
from .models import WorkerRecord, WorkerState
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of one liveness probe."""
    name: str
    healthy: bool
    latency_ms: int = 0
    error: Optional[str] = None
    skipped: bool = False       # A previous probe was still in flight


class HealthMonitor:
    """Ticking liveness checker for running workers."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        interval_s: float = 30.0,
        probe_timeout_s: float = 5.0,
    ):
        self._supervisor = supervisor
        self.interval_s = interval_s
        self.probe_timeout_s = probe_timeout_s
        self._inflight: Dict[str, asyncio.Task] = {}
        self._ticker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        """Start ticking. Calling it twice is a no-op."""
        if self.running:
            return
        self._ticker = asyncio.create_task(self._tick_loop(), name="mcphub-health")
        logger.debug("Health monitor started (every %.1fs)", self.interval_s)

    async def stop(self) -> None:
        """Stop ticking and cancel probes still in flight."""
        tasks = [t for t in self._inflight.values() if not t.done()]
        if self._ticker is not None:
            tasks.append(self._ticker)
            self._ticker = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.tick()

    def tick(self) -> List[asyncio.Task]:
        """Start one probe per running worker that has none in flight."""
        started = []
        for record in self._supervisor.running():
            current = self._inflight.get(record.name)
            if current is not None and not current.done():
                continue
            task = asyncio.create_task(self._probe(record), name=f"mcphub-probe:{record.name}")
            self._inflight[record.name] = task
            started.append(task)
        return started

    async def check_once(self) -> List[ProbeResult]:
        """Run one probing round and wait for all of its probes."""
        names = {r.name for r in self._supervisor.running()}
        started = self.tick()
        results = list(await asyncio.gather(*started)) if started else []
        probed = {r.name for r in results}
        results.extend(ProbeResult(name=n, healthy=True, skipped=True) for n in sorted(names - probed))
        return results

    async def _probe(self, record: WorkerRecord) -> ProbeResult:
        name = record.name
        generation = record.generation
        channel = record.channel
        if channel is None or record.state != WorkerState.RUNNING:
            return ProbeResult(name=name, healthy=False, skipped=True)

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            capabilities = await channel.query_capabilities(self.probe_timeout_s)
        except CapabilityQueryFailed as e:
            latency = int((loop.time() - started) * 1000)
            logger.warning("Health check failed for plugin %s: %s", name, e.message)
            # Shielded so stopping the monitor cannot interrupt a transition
            await asyncio.shield(self._report(name, e, generation))
            return ProbeResult(name=name, healthy=False, latency_ms=latency, error=e.message)
        finally:
            if self._inflight.get(name) is asyncio.current_task():
                del self._inflight[name]

        latency = int((loop.time() - started) * 1000)
        refreshed = await asyncio.shield(
            self._supervisor.refresh_capabilities(name, capabilities, generation)
        )
        if not refreshed and record.generation == generation and record.state == WorkerState.FAILED:
            # The new batch was rejected and took the worker down
            error = record.last_error.message if record.last_error else "capability refresh failed"
            return ProbeResult(name=name, healthy=False, latency_ms=latency, error=error)
        return ProbeResult(name=name, healthy=True, latency_ms=latency)

    async def _report(self, name: str, error: PluginError, generation: int) -> None:
        try:
            await self._supervisor.report_failure(name, error, generation)
        except PluginError as e:
            logger.error("Could not report failure of %s: %s", name, e.message)
