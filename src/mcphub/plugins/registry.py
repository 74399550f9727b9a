"""Capability Registry.

Merges every running worker's tools, resources and prompts into one catalog
keyed by qualified name (``owner.local``) and routes invocations back to the
owning worker's channel.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from ..errors import DuplicateCapabilityName, OwnerNotRunning, UnknownCapability
from .models import (
    CapabilityEntry,
    CapabilityKind,
    CapabilitySet,
    InvocationResult,
    WorkerRecord,
    WorkerState,
)

logger = logging.getLogger(__name__)

# Looks up the supervisor's read-only view of a worker by name
RecordLookup = Callable[[str], Optional[WorkerRecord]]


def build_entries(owner: str, capabilities: CapabilitySet) -> Dict[str, CapabilityEntry]:
    """Turn one capability batch into catalog entries keyed by qualified name.

    Raises:
        DuplicateCapabilityName: a local name occurs twice in the batch
    """
    entries: Dict[str, CapabilityEntry] = {}
    for cap in capabilities.all():
        entry = CapabilityEntry(
            owner_name=owner,
            local_name=cap.name,
            kind=cap.kind,
            description=cap.description,
            schema=cap.schema,
        )
        if entry.qualified_name in entries:
            raise DuplicateCapabilityName(
                f"Plugin {owner} advertises '{cap.name}' more than once",
                plugin=owner,
                qualified_name=entry.qualified_name,
            )
        entries[entry.qualified_name] = entry
    return entries


class CapabilityRegistry:
    """Namespaced catalog of all running workers' capabilities.

    Responsibilities:
    - Atomic per-owner ingest and retract
    - Qualified name resolution
    - Routing invocations to the owner's channel
    """

    def __init__(self, lookup: Optional[RecordLookup] = None):
        self._lookup = lookup
        self._lock = threading.RLock()
        self._entries: Dict[str, CapabilityEntry] = {}
        self._by_owner: Dict[str, Dict[str, CapabilityEntry]] = {}

    def bind(self, lookup: RecordLookup) -> None:
        """Attach the worker lookup used for state checks and routing."""
        self._lookup = lookup

    def _record(self, owner: str) -> Optional[WorkerRecord]:
        return self._lookup(owner) if self._lookup else None

    def _owner_running(self, owner: str) -> bool:
        record = self._record(owner)
        return record is not None and record.state == WorkerState.RUNNING

    def ingest(self, owner: str, capabilities: CapabilitySet) -> List[CapabilityEntry]:
        """Replace all entries of ``owner`` with a new batch.

        The batch is validated before anything is published; on a duplicate
        local name nothing changes and the error propagates so the caller can
        fail the owner.
        """
        entries = build_entries(owner, capabilities)
        with self._lock:
            for qualified in self._by_owner.pop(owner, {}):
                self._entries.pop(qualified, None)
            self._by_owner[owner] = entries
            self._entries.update(entries)
        logger.debug("Ingested %d capabilities for %s", len(entries), owner)
        return list(entries.values())

    def retract(self, owner: str) -> int:
        """Remove every entry of ``owner``. Returns how many were removed."""
        with self._lock:
            removed = self._by_owner.pop(owner, {})
            for qualified in removed:
                self._entries.pop(qualified, None)
        if removed:
            logger.debug("Retracted %d capabilities for %s", len(removed), owner)
        return len(removed)

    def resolve(self, qualified_name: str) -> CapabilityEntry:
        """Return the entry for a qualified name.

        Raises:
            UnknownCapability: no running owner advertises that name
        """
        with self._lock:
            entry = self._entries.get(qualified_name)
        if entry is None:
            owner = qualified_name.split(".", 1)[0] if "." in qualified_name else None
            raise UnknownCapability(
                f"Unknown capability '{qualified_name}'",
                plugin=owner,
                qualified_name=qualified_name,
            )
        return entry

    async def invoke(
        self,
        qualified_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> InvocationResult:
        """Route an invocation to the owning worker.

        Failures come back as structured results. The worker's answer is
        returned unmodified and never retried.
        """
        try:
            entry = self.resolve(qualified_name)
        except UnknownCapability as e:
            # Entries are retracted when an owner leaves running; a name in a
            # managed but idle namespace still reports the owner's state
            record = self._record(e.plugin) if e.plugin else None
            if record is not None and record.state != WorkerState.RUNNING:
                return InvocationResult.failed(self._not_running(record, qualified_name))
            return InvocationResult.failed(e)

        owner = entry.owner_name
        record = self._record(owner)
        if record is None or record.state != WorkerState.RUNNING or record.channel is None:
            return InvocationResult.failed(self._not_running(record, qualified_name, owner))

        timeout = timeout_s or record.descriptor.call_timeout_s
        return await record.channel.invoke(entry.local_name, arguments or {}, timeout, kind=entry.kind)

    @staticmethod
    def _not_running(
        record: Optional[WorkerRecord],
        qualified_name: str,
        owner: Optional[str] = None,
    ) -> OwnerNotRunning:
        owner = record.name if record else owner
        state = record.state.value if record else "unmanaged"
        return OwnerNotRunning(f"Plugin {owner} is {state}", plugin=owner, qualified_name=qualified_name)

    def catalog(self, kind: Optional[CapabilityKind] = None) -> List[CapabilityEntry]:
        """Entries of running owners, sorted by qualified name."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(
            (
                e for e in entries
                if (kind is None or e.kind == kind) and self._owner_running(e.owner_name)
            ),
            key=lambda e: e.qualified_name,
        )

    def entries_for(self, owner: str) -> List[CapabilityEntry]:
        with self._lock:
            return sorted(self._by_owner.get(owner, {}).values(), key=lambda e: e.qualified_name)

    def namespaces(self) -> List[str]:
        with self._lock:
            owners = [o for o, entries in self._by_owner.items() if entries]
        return sorted(o for o in owners if self._owner_running(o))

    def __contains__(self, qualified_name: str) -> bool:
        with self._lock:
            return qualified_name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
