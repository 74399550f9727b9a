"""Plugin Descriptor Source.

Scans a plugins directory for ``<plugin>/plugin.json`` manifests and turns
them into an ordered list of PluginDescriptor objects. Nothing here touches
processes or runtime state.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from ..errors import AlreadyManaged, ManifestError
from .models import PluginDescriptor

logger = logging.getLogger(__name__)

MANIFEST_NAME = "plugin.json"


class DescriptorSource(Protocol):
    def list(self) -> List[PluginDescriptor]:
        ...


def dedupe(descriptors: Iterable[PluginDescriptor]) -> List[PluginDescriptor]:
    """Keep the first descriptor of each name; later duplicates are skipped."""
    seen: Dict[str, PluginDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.name in seen:
            err = AlreadyManaged(
                f"Duplicate plugin name {descriptor.name!r} ({descriptor.entry_path}); "
                f"keeping {seen[descriptor.name].entry_path}",
                plugin=descriptor.name,
            )
            logger.warning("%s", err.message)
            continue
        seen[descriptor.name] = descriptor
    return list(seen.values())


def load_manifest(plugin_dir: Path, defaults: Optional[dict] = None) -> PluginDescriptor:
    """Read one plugin directory's manifest.

    Raises:
        ManifestError: missing, unreadable or invalid manifest
    """
    path = plugin_dir / MANIFEST_NAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ManifestError(f"No {MANIFEST_NAME} in {plugin_dir}", plugin=plugin_dir.name) from None
    except (OSError, ValueError) as e:
        raise ManifestError(f"Cannot read {path}: {e}", plugin=plugin_dir.name) from e
    return PluginDescriptor.from_dict(data, base_dir=plugin_dir.resolve(), defaults=defaults)


class ManifestDirectorySource:
    """Descriptors from manifests in the subdirectories of a plugins directory."""

    def __init__(self, plugins_dir: Path | str, defaults: Optional[dict] = None):
        self.plugins_dir = Path(plugins_dir)
        self.defaults = defaults or {}

    def list(self) -> List[PluginDescriptor]:
        if not self.plugins_dir.is_dir():
            logger.warning("Plugins directory %s does not exist", self.plugins_dir)
            return []

        found: List[PluginDescriptor] = []
        for entry in sorted(self.plugins_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith((".", "_")):
                continue
            try:
                descriptor = load_manifest(entry, self.defaults)
            except ManifestError as e:
                logger.warning("Skipping plugin %s: %s", entry.name, e.message)
                continue
            if not descriptor.enabled:
                logger.info("Plugin %s is disabled", descriptor.name)
                continue
            found.append(descriptor)
        return dedupe(found)


class StaticDescriptorSource:
    """Descriptors supplied in memory."""

    def __init__(self, descriptors: Iterable[PluginDescriptor]):
        self._descriptors = list(descriptors)

    def list(self) -> List[PluginDescriptor]:
        return dedupe(d for d in self._descriptors if d.enabled)


def order_by_dependencies(descriptors: List[PluginDescriptor]) -> List[List[PluginDescriptor]]:
    """Group descriptors into start waves.

    A descriptor lands in a later wave than every declared dependency that is
    part of the same list. Unknown dependency names are ignored; descriptors
    caught in a cycle are placed in a final wave in discovery order.
    """
    names = {d.name for d in descriptors}
    remaining = list(descriptors)
    placed: set = set()
    waves: List[List[PluginDescriptor]] = []

    while remaining:
        wave = [d for d in remaining if (d.dependencies & names) <= placed]
        if not wave:
            logger.warning(
                "Dependency cycle among %s; starting them together",
                ", ".join(d.name for d in remaining),
            )
            waves.append(remaining)
            break
        waves.append(wave)
        placed.update(d.name for d in wave)
        remaining = [d for d in remaining if d.name not in placed]
    return waves
