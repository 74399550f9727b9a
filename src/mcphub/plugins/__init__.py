"""mcphub Plugin System.

Supervises plugin worker processes and aggregates their capabilities:
- Discover plugins from plugin.json manifests
- Spawn, handshake and restart workers per their restart policy
- Unified capability catalog with namespacing (owner.local)
- Periodic health probes and lifecycle events

Admin commands:
- mcphub plugin list      - List discovered plugins
- mcphub plugin tools     - List capabilities of one plugin
- mcphub plugin status    - Show worker status
- mcphub plugin doctor    - Check health of all plugins
- mcphub plugin call      - Invoke a capability by qualified name
"""

from .models import (
    Capability,
    CapabilityEntry,
    CapabilityKind,
    CapabilitySet,
    InvocationFailure,
    InvocationResult,
    PluginDescriptor,
    RestartPolicy,
    WorkerRecord,
    WorkerState,
)
from .discovery import ManifestDirectorySource, StaticDescriptorSource, order_by_dependencies
from .events import EventBus, EventKind, LifecycleEvent
from .registry import CapabilityRegistry
from .supervisor import ProcessSupervisor
from .health import HealthMonitor, ProbeResult
from .host import PluginHost

__all__ = [
    "Capability",
    "CapabilityEntry",
    "CapabilityKind",
    "CapabilitySet",
    "InvocationFailure",
    "InvocationResult",
    "PluginDescriptor",
    "RestartPolicy",
    "WorkerRecord",
    "WorkerState",
    "ManifestDirectorySource",
    "StaticDescriptorSource",
    "order_by_dependencies",
    "EventBus",
    "EventKind",
    "LifecycleEvent",
    "CapabilityRegistry",
    "ProcessSupervisor",
    "HealthMonitor",
    "ProbeResult",
    "PluginHost",
]
