"""Shared fixtures for mcphub tests."""

import asyncio
import os
import sys
from pathlib import Path

import pytest

from mcphub.plugins.models import PluginDescriptor

ROOT = Path(__file__).resolve().parent.parent
WORKERS = Path(__file__).resolve().parent / "fixtures" / "workers"


def worker_env() -> dict:
    """Environment that lets fixture workers import mcphub from the source tree."""
    paths = [str(ROOT / "src")]
    if os.environ.get("PYTHONPATH"):
        paths.append(os.environ["PYTHONPATH"])
    return {"PYTHONPATH": os.pathsep.join(paths)}


@pytest.fixture
def make_descriptor():
    """Factory for descriptors that run a fixture worker script."""
    def factory(script: str, name: str = None, **kwargs) -> PluginDescriptor:
        path = WORKERS / script
        kwargs.setdefault("restart_delay_s", 0.05)
        kwargs.setdefault("call_timeout_s", 5.0)
        env = {**worker_env(), **kwargs.pop("env", {})}
        return PluginDescriptor(
            name=name or path.stem.replace("_worker", ""),
            entry_path=str(path),
            command=(sys.executable, str(path)),
            env=env,
            **kwargs,
        )
    return factory


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires."""
    async def wait(predicate, timeout: float = 10.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within %.1fs" % timeout)
            await asyncio.sleep(interval)
    return wait
