"""Plugin descriptors, worker records and catalog models.

Defines the data structures shared by the supervisor, the worker channel,
the capability registry and the health monitor.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple

from ..errors import ManifestError, PluginError

if TYPE_CHECKING:
    from .channel import WorkerChannel


class RestartPolicy(str, Enum):
    """When a failed worker is started again."""
    ALWAYS = "always"           # Restart on every failure
    ON_FAILURE = "on-failure"   # Restart until max_restarts is reached
    NEVER = "never"             # Leave failed


class WorkerState(str, Enum):
    """Lifecycle states of a worker record."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class CapabilityKind(str, Enum):
    """Kinds of capability a worker can advertise."""
    TOOL = "tool"
    RESOURCE = "resource"
    PROMPT = "prompt"


DEFAULT_PROCESS = {
    "restart_policy": RestartPolicy.ON_FAILURE.value,
    "max_restarts": 3,
    "restart_delay_s": 1.0,
    "call_timeout_s": 30.0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PluginDescriptor:
    """Immutable description of one installable plugin."""
    name: str                                       # Unique key, also the namespace
    entry_path: str                                 # Script or executable to run
    command: Tuple[str, ...] = ()                   # Explicit argv (empty = derived)
    restart_policy: RestartPolicy = RestartPolicy.ON_FAILURE
    max_restarts: int = 3
    restart_delay_s: float = 1.0
    call_timeout_s: float = 30.0
    dependencies: FrozenSet[str] = frozenset()      # Informational only
    env: Mapping[str, str] = field(default_factory=dict, hash=False, compare=False)
    version: str = "0.0.0"
    description: str = ""
    enabled: bool = True

    def __post_init__(self):
        if isinstance(self.restart_policy, str) and not isinstance(self.restart_policy, RestartPolicy):
            try:
                object.__setattr__(self, "restart_policy", RestartPolicy(self.restart_policy))
            except ValueError:
                raise ManifestError(
                    f"Unknown restart policy: {self.restart_policy}", plugin=self.name or None
                ) from None
        if not isinstance(self.command, tuple):
            object.__setattr__(self, "command", tuple(self.command))
        if not isinstance(self.dependencies, frozenset):
            object.__setattr__(self, "dependencies", frozenset(self.dependencies))
        self.validate()

    def validate(self) -> None:
        if not self.name or "." in self.name:
            raise ManifestError(f"Invalid plugin name: {self.name!r}", plugin=self.name or None)
        if not self.entry_path and not self.command:
            raise ManifestError("Either an entry path or a command is required", plugin=self.name)
        if self.max_restarts < 0:
            raise ManifestError("max_restarts must be non-negative", plugin=self.name)
        if self.restart_delay_s < 0:
            raise ManifestError("restart_delay_s must be non-negative", plugin=self.name)
        if self.call_timeout_s <= 0:
            raise ManifestError("call_timeout_s must be positive", plugin=self.name)

    @property
    def argv(self) -> List[str]:
        """Command line used to spawn the worker."""
        if self.command:
            return list(self.command)
        entry = str(Path(self.entry_path).resolve())
        if entry.endswith(".py"):
            return [sys.executable, entry]
        return [entry]

    @property
    def working_dir(self) -> Optional[str]:
        """Directory the worker runs in (the plugin directory)."""
        if not self.entry_path:
            return None
        return str(Path(self.entry_path).resolve().parent)

    def to_dict(self) -> dict:
        """Serialize to the manifest format."""
        data = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "entry": self.entry_path,
            "enabled": self.enabled,
            "dependencies": sorted(self.dependencies),
            "env": dict(self.env),
            "process": {
                "restart_policy": self.restart_policy.value,
                "max_restarts": self.max_restarts,
                "restart_delay_s": self.restart_delay_s,
                "call_timeout_s": self.call_timeout_s,
            },
        }
        if self.command:
            data["command"] = list(self.command)
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict,
        base_dir: Optional[Path] = None,
        defaults: Optional[dict] = None,
    ) -> "PluginDescriptor":
        """Build a descriptor from a parsed manifest.

        Relative entry paths are resolved against ``base_dir``; missing process
        settings come from ``defaults`` (see ``Settings.process_defaults``).
        """
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")
        name = data.get("name") or (base_dir.name if base_dir else "")
        process = {**DEFAULT_PROCESS, **(defaults or {}), **(data.get("process") or {})}

        entry = str(data.get("entry", "main.py" if base_dir else ""))
        if entry and base_dir and not Path(entry).is_absolute():
            entry = str(base_dir / entry)

        deps = data.get("dependencies", [])
        if isinstance(deps, dict):
            deps = list(deps.keys())

        try:
            return cls(
                name=str(name),
                entry_path=entry,
                command=tuple(str(c) for c in data.get("command", [])),
                restart_policy=process["restart_policy"],
                max_restarts=int(process["max_restarts"]),
                restart_delay_s=float(process["restart_delay_s"]),
                call_timeout_s=float(process["call_timeout_s"]),
                dependencies=frozenset(str(d) for d in deps),
                env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
                version=str(data.get("version", "0.0.0")),
                description=str(data.get("description", "")),
                enabled=bool(data.get("enabled", True)),
            )
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Invalid manifest for {name!r}: {e}", plugin=str(name) or None) from e


@dataclass(frozen=True)
class Capability:
    """A tool, resource or prompt as advertised by a worker."""
    name: str
    kind: CapabilityKind
    description: str = ""
    schema: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_wire(cls, kind: CapabilityKind, data: dict) -> "Capability":
        schema = {k: v for k, v in data.items() if k not in ("name", "description")}
        return cls(
            name=data["name"],
            kind=kind,
            description=str(data.get("description", "")),
            schema=schema,
        )

    def to_wire(self) -> dict:
        return {"name": self.name, "description": self.description, **self.schema}


@dataclass
class CapabilitySet:
    """Everything one worker advertised in a single capability query."""
    tools: List[Capability] = field(default_factory=list)
    resources: List[Capability] = field(default_factory=list)
    prompts: List[Capability] = field(default_factory=list)

    def all(self) -> Iterator[Capability]:
        yield from self.tools
        yield from self.resources
        yield from self.prompts

    def __len__(self) -> int:
        return len(self.tools) + len(self.resources) + len(self.prompts)


@dataclass(frozen=True)
class CapabilityEntry:
    """A row of the externally visible catalog."""
    owner_name: str
    local_name: str
    kind: CapabilityKind
    description: str = ""
    schema: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def qualified_name(self) -> str:
        return f"{self.owner_name}.{self.local_name}"

    def to_dict(self) -> dict:
        return {
            "name": self.qualified_name,
            "owner": self.owner_name,
            "kind": self.kind.value,
            "description": self.description,
            "schema": self.schema,
        }


@dataclass(frozen=True)
class InvocationFailure:
    """Structured failure returned to invocation callers."""
    code: str
    message: str
    owner: Optional[str] = None
    qualified_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "owner": self.owner,
            "qualified_name": self.qualified_name,
        }


@dataclass
class InvocationResult:
    """Result of routing one invocation to a worker."""
    success: bool
    result: Any = None
    error: Optional[InvocationFailure] = None

    @classmethod
    def ok(cls, result: Any) -> "InvocationResult":
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: PluginError) -> "InvocationResult":
        return cls(success=False, error=error.to_failure())

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error.to_dict() if self.error else None}


@dataclass(eq=False)
class WorkerRecord:
    """Supervisor-owned runtime state of one plugin.

    Other components receive records read-only; every mutation happens in the
    supervisor while holding ``lock``.
    """
    descriptor: PluginDescriptor
    state: WorkerState = WorkerState.STARTING
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    channel: Optional["WorkerChannel"] = field(default=None, repr=False)
    restart_count: int = 0
    last_transition_at: datetime = field(default_factory=utcnow)
    capabilities: CapabilitySet = field(default_factory=CapabilitySet, repr=False)
    last_error: Optional[PluginError] = None
    exhausted: bool = False
    server_info: Dict[str, Any] = field(default_factory=dict, repr=False)
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_running(self) -> bool:
        return self.state == WorkerState.RUNNING

    def to_status(self) -> dict:
        return {
            "state": self.state.value,
            "restart_count": self.restart_count,
            "last_transition_at": self.last_transition_at.isoformat(),
            "tool_count": len(self.capabilities.tools),
            "resource_count": len(self.capabilities.resources),
            "prompt_count": len(self.capabilities.prompts),
            "pid": self.pid,
            "error": self.last_error.to_dict() if self.last_error else None,
            "exhausted": self.exhausted,
        }
