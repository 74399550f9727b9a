"""Tests for plugin discovery."""

import json
from pathlib import Path

import pytest

from mcphub.plugins.discovery import (
    ManifestDirectorySource,
    StaticDescriptorSource,
    order_by_dependencies,
)
from mcphub.plugins.models import PluginDescriptor


def write_plugin(root: Path, dirname: str, manifest) -> Path:
    plugin_dir = root / dirname
    plugin_dir.mkdir(parents=True)
    text = manifest if isinstance(manifest, str) else json.dumps(manifest)
    (plugin_dir / "plugin.json").write_text(text, encoding="utf-8")
    (plugin_dir / "main.py").write_text("", encoding="utf-8")
    return plugin_dir


def descriptor(name, deps=()):
    return PluginDescriptor(name=name, entry_path="main.py", dependencies=frozenset(deps))


class TestManifestDirectorySource:
    """Tests for ManifestDirectorySource."""

    def test_missing_directory(self, tmp_path):
        """Test a missing plugins directory yields nothing."""
        assert ManifestDirectorySource(tmp_path / "nope").list() == []

    def test_sorted_discovery(self, tmp_path):
        """Test plugins are discovered in directory order."""
        write_plugin(tmp_path, "zeta", {"name": "zeta"})
        write_plugin(tmp_path, "alpha", {})
        names = [d.name for d in ManifestDirectorySource(tmp_path).list()]
        assert names == ["alpha", "zeta"]

    def test_entry_resolved(self, tmp_path):
        """Test entry paths resolve against the plugin directory."""
        plugin_dir = write_plugin(tmp_path, "hello", {"entry": "server.py"})
        [d] = ManifestDirectorySource(tmp_path).list()
        assert Path(d.entry_path) == plugin_dir.resolve() / "server.py"

    def test_defaults_applied(self, tmp_path):
        """Test process defaults fill in missing manifest values."""
        write_plugin(tmp_path, "hello", {"process": {"max_restarts": 1}})
        [d] = ManifestDirectorySource(tmp_path, defaults={"call_timeout_s": 9.0, "max_restarts": 5}).list()
        assert d.call_timeout_s == 9.0
        assert d.max_restarts == 1

    def test_invalid_manifests_skipped(self, tmp_path):
        """Test unreadable and invalid manifests are skipped."""
        write_plugin(tmp_path, "broken", "{not json")
        write_plugin(tmp_path, "badpolicy", {"process": {"restart_policy": "sometimes"}})
        write_plugin(tmp_path, "list", "[]")
        write_plugin(tmp_path, "good", {})
        (tmp_path / "nomanifest").mkdir()
        (tmp_path / "README.md").write_text("not a plugin")
        names = [d.name for d in ManifestDirectorySource(tmp_path).list()]
        assert names == ["good"]

    def test_disabled_skipped(self, tmp_path):
        """Test disabled plugins are not listed."""
        write_plugin(tmp_path, "off", {"enabled": False})
        write_plugin(tmp_path, "on", {})
        assert [d.name for d in ManifestDirectorySource(tmp_path).list()] == ["on"]

    def test_duplicate_name_skipped(self, tmp_path, caplog):
        """Test a second manifest with a known name is skipped."""
        first = write_plugin(tmp_path, "a-echo", {"name": "echo"})
        write_plugin(tmp_path, "b-echo", {"name": "echo"})
        found = ManifestDirectorySource(tmp_path).list()
        assert len(found) == 1
        assert Path(found[0].entry_path).parent == first.resolve()
        assert "Duplicate plugin name" in caplog.text

    def test_hidden_directories_ignored(self, tmp_path):
        """Test dot and underscore directories are ignored."""
        write_plugin(tmp_path, ".cache", {})
        write_plugin(tmp_path, "__pycache__", {})
        assert ManifestDirectorySource(tmp_path).list() == []


class TestStaticDescriptorSource:
    """Tests for StaticDescriptorSource."""

    def test_filters(self):
        """Test disabled and duplicate descriptors are dropped."""
        source = StaticDescriptorSource([
            descriptor("a"),
            PluginDescriptor(name="b", entry_path="main.py", enabled=False),
            descriptor("a", deps=["x"]),
        ])
        found = source.list()
        assert [d.name for d in found] == ["a"]
        assert found[0].dependencies == frozenset()


class TestOrderByDependencies:
    """Tests for dependency wave ordering."""

    def test_independent(self):
        """Test independent plugins share one wave."""
        waves = order_by_dependencies([descriptor("a"), descriptor("b")])
        assert [[d.name for d in w] for w in waves] == [["a", "b"]]

    def test_chain(self):
        """Test dependencies start in earlier waves."""
        waves = order_by_dependencies([descriptor("app", ["db"]), descriptor("db"), descriptor("cache", ["db"])])
        assert [[d.name for d in w] for w in waves] == [["db"], ["app", "cache"]]

    def test_missing_dependency_ignored(self):
        """Test unknown dependency names do not block startup."""
        waves = order_by_dependencies([descriptor("app", ["postgres"])])
        assert [[d.name for d in w] for w in waves] == [["app"]]

    def test_cycle(self):
        """Test cyclic dependencies fall back to discovery order."""
        waves = order_by_dependencies([descriptor("x"), descriptor("a", ["b"]), descriptor("b", ["a"])])
        assert [[d.name for d in w] for w in waves] == [["x"], ["a", "b"]]

    def test_empty(self):
        """Test no descriptors means no waves."""
        assert order_by_dependencies([]) == []
