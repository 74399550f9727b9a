"""Plugin host.

Wires the descriptor source, supervisor, registry, event bus and health
monitor together behind one object for the transport layer and the CLI.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..errors import AlreadyManaged
from .discovery import DescriptorSource, ManifestDirectorySource, order_by_dependencies
from .events import EventBus
from .health import HealthMonitor, ProbeResult
from .models import CapabilityEntry, CapabilityKind, InvocationResult, PluginDescriptor, WorkerRecord
from .registry import CapabilityRegistry
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class PluginHost:
    """Runs every discovered plugin and exposes the merged catalog.

    Usage::

        async with PluginHost(Settings.load()) as host:
            result = await host.invoke("hello-world.greet", {"name": "Ada"})
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        source: Optional[DescriptorSource] = None,
    ):
        self.settings = settings or Settings.load()
        self.source = source or ManifestDirectorySource(
            self.settings.plugins_dir,
            defaults=self.settings.process_defaults(),
        )
        self.registry = CapabilityRegistry()
        self.events = EventBus()
        self.supervisor = ProcessSupervisor(self.registry, self.events)
        self.health = HealthMonitor(
            self.supervisor,
            interval_s=self.settings.health_check_interval_s,
            probe_timeout_s=self.settings.health_check_timeout_s,
        )

    async def __aenter__(self) -> "PluginHost":
        await self.start_all()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    async def start_all(self, monitor: bool = True) -> List[WorkerRecord]:
        """Discover plugins and start them, dependencies first.

        Each wave starts concurrently. Startup failures do not raise; they
        show up in ``status()``.
        """
        descriptors = self.source.list()
        logger.info("Discovered %d plugins", len(descriptors))

        records: List[WorkerRecord] = []
        for wave in order_by_dependencies(descriptors):
            results = await asyncio.gather(
                *(self.supervisor.start(d) for d in wave), return_exceptions=True
            )
            for descriptor, result in zip(wave, results):
                if isinstance(result, AlreadyManaged):
                    logger.warning("Skipping %s: %s", descriptor.name, result.message)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    records.append(result)

        if monitor:
            self.health.start()
        return records

    async def shutdown(self) -> None:
        """Stop health checks, then every worker, then the event bus."""
        await self.health.stop()
        await self.supervisor.shutdown()
        self.events.close()

    # ------------------------------------------------------------------
    # Passthroughs
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Dict[str, Any]]:
        return self.supervisor.status()

    def catalog(self, kind: Optional[CapabilityKind] = None) -> List[CapabilityEntry]:
        return self.registry.catalog(kind)

    async def invoke(
        self,
        qualified_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> InvocationResult:
        return await self.registry.invoke(qualified_name, arguments, timeout_s)

    async def start(self, descriptor: PluginDescriptor) -> WorkerRecord:
        return await self.supervisor.start(descriptor)

    async def stop(self, name: str) -> None:
        await self.supervisor.stop(name)

    async def restart(self, name: str) -> WorkerRecord:
        return await self.supervisor.restart(name)

    async def unload(self, name: str) -> None:
        await self.supervisor.unload(name)

    async def check_health(self) -> List[ProbeResult]:
        """Run one health round immediately."""
        return await self.health.check_once()
