"""Tests for the process supervisor."""

import asyncio
import contextlib
import logging

import pytest

from mcphub.errors import AlreadyManaged, NotManaged, WorkerExited
from mcphub.plugins.events import EventKind
from mcphub.plugins.models import PluginDescriptor, RestartPolicy, WorkerState
from mcphub.plugins.supervisor import ProcessSupervisor, should_restart


@contextlib.asynccontextmanager
async def supervising():
    supervisor = ProcessSupervisor()
    try:
        yield supervisor
    finally:
        await supervisor.shutdown()


async def crash(supervisor, name="echo"):
    result = await supervisor.registry.invoke(f"{name}.crash")
    assert not result.success
    assert result.error.code == "WORKER_EXITED"


def qualified_names(supervisor):
    return [e.qualified_name for e in supervisor.registry.catalog()]


class TestShouldRestart:
    """Tests for the restart decision."""

    def descriptor(self, policy, max_restarts=3):
        return PluginDescriptor(name="x", entry_path="main.py", restart_policy=policy, max_restarts=max_restarts)

    def test_never(self):
        """Test never restarts."""
        assert not should_restart(self.descriptor(RestartPolicy.NEVER), 0)

    def test_always_ignores_budget(self):
        """Test always restarts regardless of the budget."""
        d = self.descriptor(RestartPolicy.ALWAYS, max_restarts=0)
        assert all(should_restart(d, n) for n in range(50))

    def test_on_failure_budget(self):
        """Test on-failure restarts until max_restarts is reached."""
        d = self.descriptor(RestartPolicy.ON_FAILURE, max_restarts=2)
        assert [should_restart(d, n) for n in range(4)] == [True, True, False, False]


class TestStart:
    """Tests for starting workers."""

    @pytest.mark.asyncio
    async def test_start_running(self, make_descriptor):
        """Test a healthy worker reaches running with its capabilities registered."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py"))
            assert record.state == WorkerState.RUNNING
            assert record.pid is not None
            assert record.server_info["name"] == "echo"
            assert "echo.echo" in qualified_names(sup)
            assert "echo.status" in qualified_names(sup)

            status = sup.status()["echo"]
            assert status["state"] == "running"
            assert status["tool_count"] == 5
            assert status["resource_count"] == 1
            assert status["prompt_count"] == 1
            assert status["error"] is None

    @pytest.mark.asyncio
    async def test_invoke_through_registry(self, make_descriptor):
        """Test invocations reach the worker and return its answer."""
        async with supervising() as sup:
            await sup.start(make_descriptor("echo_worker.py"))
            result = await sup.registry.invoke("echo.echo", {"hello": "world"})
            assert result.success
            assert result.result == {"hello": "world"}

    @pytest.mark.asyncio
    async def test_already_managed(self, make_descriptor):
        """Test starting a managed name raises AlreadyManaged."""
        async with supervising() as sup:
            await sup.start(make_descriptor("echo_worker.py"))
            with pytest.raises(AlreadyManaged):
                await sup.start(make_descriptor("echo_worker.py"))

    @pytest.mark.asyncio
    async def test_not_managed(self):
        """Test management calls on unknown names raise NotManaged."""
        async with supervising() as sup:
            for op in (sup.stop, sup.restart, sup.unload):
                with pytest.raises(NotManaged):
                    await op("ghost")

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        """Test an unspawnable command fails the record without raising."""
        descriptor = PluginDescriptor(
            name="ghost",
            entry_path="",
            command=("/nonexistent/mcphub-worker",),
            restart_policy=RestartPolicy.NEVER,
        )
        async with supervising() as sup:
            record = await sup.start(descriptor)
            assert record.state == WorkerState.FAILED
            assert record.last_error.code.value == "SPAWN_FAILURE"
            assert record.exhausted

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, make_descriptor):
        """Test a silent worker fails with HANDSHAKE_TIMEOUT and is killed."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor(
                "mute_worker.py", restart_policy=RestartPolicy.NEVER, call_timeout_s=0.3
            ))
            assert record.state == WorkerState.FAILED
            assert record.last_error.code.value == "HANDSHAKE_TIMEOUT"
            assert record.process is None
            assert record.channel is None

    @pytest.mark.asyncio
    async def test_exit_before_handshake(self, make_descriptor, eventually, caplog):
        """Test a worker that exits early fails and its stderr is relayed."""
        caplog.set_level(logging.DEBUG, logger="mcphub.plugins.supervisor")
        async with supervising() as sup:
            record = await sup.start(make_descriptor("exit_worker.py", restart_policy=RestartPolicy.NEVER))
            assert record.state == WorkerState.FAILED
            assert record.last_error.code.value == "HANDSHAKE_TIMEOUT"
            await eventually(lambda: "[exit] exiting early" in caplog.text)

    @pytest.mark.asyncio
    async def test_duplicate_capabilities(self, make_descriptor):
        """Test a duplicate name batch fails the owner and registers nothing."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("dup_worker.py", restart_policy=RestartPolicy.NEVER))
            assert record.state == WorkerState.FAILED
            assert record.last_error.code.value == "DUPLICATE_CAPABILITY_NAME"
            assert not any(n.startswith("dup.") for n in qualified_names(sup))
            assert len(sup.registry) == 0
            assert sup.status()["dup"]["error"]["code"] == "DUPLICATE_CAPABILITY_NAME"

    @pytest.mark.asyncio
    async def test_start_events(self, make_descriptor):
        """Test starting publishes starting then started."""
        async with supervising() as sup:
            sub = sup.events.subscribe(names=frozenset({"echo"}))
            await sup.start(make_descriptor("echo_worker.py"))
            assert [e.kind for e in sub.drain()] == [EventKind.STARTING, EventKind.STARTED]


class TestRestartPolicies:
    """Tests for restart policy handling."""

    @pytest.mark.asyncio
    async def test_never(self, make_descriptor, eventually):
        """Test a crash under never leaves the record failed for good."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py", restart_policy=RestartPolicy.NEVER))
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED)
            await asyncio.sleep(0.3)
            assert record.state == WorkerState.FAILED
            assert record.restart_count == 0
            assert record.exhausted
            assert isinstance(record.last_error, WorkerExited)

    @pytest.mark.asyncio
    async def test_always(self, make_descriptor, eventually):
        """Test always restarts on every crash, ignoring max_restarts."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor(
                "echo_worker.py", restart_policy=RestartPolicy.ALWAYS, max_restarts=0
            ))
            for attempt in range(1, 4):
                await crash(sup)
                await eventually(
                    lambda: record.state == WorkerState.RUNNING and record.restart_count == attempt
                )
            assert record.restart_count == 3
            assert not record.exhausted

    @pytest.mark.asyncio
    async def test_on_failure_budget(self, make_descriptor, eventually):
        """Test the crash after max_restarts restarts is terminal."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor(
                "echo_worker.py", restart_policy=RestartPolicy.ON_FAILURE, max_restarts=1
            ))
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.RUNNING and record.restart_count == 1)
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED and record.exhausted)
            await asyncio.sleep(0.3)
            assert record.state == WorkerState.FAILED
            assert record.restart_count == 1
            assert record.last_error.code.value == "RESTART_BUDGET_EXHAUSTED"
            assert isinstance(record.last_error.cause, WorkerExited)

    @pytest.mark.asyncio
    async def test_restart_resets_counter(self, make_descriptor, eventually):
        """Test a manual restart clears an exhausted budget."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor(
                "echo_worker.py", restart_policy=RestartPolicy.ON_FAILURE, max_restarts=0
            ))
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED)
            assert record.exhausted

            await sup.restart("echo")
            assert record.state == WorkerState.RUNNING
            assert record.restart_count == 0
            assert not record.exhausted
            assert record.last_error is None
            assert "echo.echo" in qualified_names(sup)

    @pytest.mark.asyncio
    async def test_restart_running_worker(self, make_descriptor):
        """Test restarting a running worker replaces its process."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py"))
            old_pid = record.pid
            await sup.restart("echo")
            assert record.state == WorkerState.RUNNING
            assert record.pid != old_pid

    @pytest.mark.asyncio
    async def test_crash_scenario(self, make_descriptor, eventually):
        """Test three crashes under on-failure with two restarts allowed."""
        async with supervising() as sup:
            sub = sup.events.subscribe(names=frozenset({"echo"}))
            record = await sup.start(make_descriptor(
                "echo_worker.py", restart_policy=RestartPolicy.ON_FAILURE, max_restarts=2
            ))
            for attempt in (1, 2):
                await crash(sup)
                await eventually(
                    lambda: record.state == WorkerState.RUNNING and record.restart_count == attempt
                )
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED and record.exhausted)

            events = sub.drain()
            assert [e.state for e in events] == [
                WorkerState.STARTING, WorkerState.RUNNING, WorkerState.FAILED,
            ] * 3
            assert [e.terminal for e in events if e.kind == EventKind.FAILED] == [False, False, True]
            assert record.restart_count == 2
            assert not any(n.startswith("echo.") for n in qualified_names(sup))
            assert sup.status()["echo"]["state"] == "failed"

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, make_descriptor, eventually):
        """Test stopping a failed record cancels its scheduled restart."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor(
                "echo_worker.py", restart_policy=RestartPolicy.ALWAYS, restart_delay_s=0.5
            ))
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED)
            await sup.stop("echo")
            assert record.state == WorkerState.STOPPED
            await asyncio.sleep(0.8)
            assert record.state == WorkerState.STOPPED
            assert record.process is None

    @pytest.mark.asyncio
    async def test_report_failure(self, make_descriptor, eventually):
        """Test externally reported failures go through the restart path."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py"))
            generation = record.generation
            assert await sup.report_failure("echo", WorkerExited("probe failed"), generation)
            await eventually(lambda: record.state == WorkerState.RUNNING and record.restart_count == 1)
            # Stale generation is ignored
            assert not await sup.report_failure("echo", WorkerExited("late"), generation)
            assert not await sup.report_failure("ghost", WorkerExited("unknown"))


class TestStop:
    """Tests for stopping, unloading and shutdown."""

    @pytest.mark.asyncio
    async def test_graceful_stop(self, make_descriptor):
        """Test stop asks the worker to exit and clears its entries."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py"))
            process = record.process
            await sup.stop("echo")
            assert record.state == WorkerState.STOPPED
            assert process.returncode == 0
            assert record.pid is None
            assert qualified_names(sup) == []

            await sup.stop("echo")
            assert record.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_forced_stop(self, make_descriptor):
        """Test a worker ignoring shutdown and SIGTERM is killed."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("stubborn_worker.py", call_timeout_s=0.5))
            assert record.state == WorkerState.RUNNING
            process = record.process
            await asyncio.wait_for(sup.stop("stubborn"), 10.0)
            assert record.state == WorkerState.STOPPED
            assert process.returncode is not None
            assert process.returncode != 0

    @pytest.mark.asyncio
    async def test_stop_events(self, make_descriptor):
        """Test stop publishes stopping then stopped."""
        async with supervising() as sup:
            await sup.start(make_descriptor("echo_worker.py"))
            sub = sup.events.subscribe()
            await sup.stop("echo")
            assert [e.kind for e in sub.drain()] == [EventKind.STOPPING, EventKind.STOPPED]

    @pytest.mark.asyncio
    async def test_invoke_stopped_owner(self, make_descriptor):
        """Test invoking a stopped owner fails fast with OWNER_NOT_RUNNING."""
        async with supervising() as sup:
            await sup.start(make_descriptor("echo_worker.py"))
            await sup.stop("echo")
            result = await asyncio.wait_for(sup.registry.invoke("echo.echo", {}), 1.0)
            assert result.error.code == "OWNER_NOT_RUNNING"
            assert result.error.owner == "echo"

    @pytest.mark.asyncio
    async def test_invoke_failed_owner(self, make_descriptor, eventually):
        """Test invoking a failed owner fails fast with OWNER_NOT_RUNNING."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py", restart_policy=RestartPolicy.NEVER))
            await crash(sup)
            await eventually(lambda: record.state == WorkerState.FAILED)
            result = await asyncio.wait_for(sup.registry.invoke("echo.echo", {}), 1.0)
            assert result.error.code == "OWNER_NOT_RUNNING"

    @pytest.mark.asyncio
    async def test_unload(self, make_descriptor):
        """Test unload stops the worker and forgets the record."""
        async with supervising() as sup:
            await sup.start(make_descriptor("echo_worker.py"))
            sub = sup.events.subscribe(kinds=frozenset({EventKind.UNLOADED}))
            await sup.unload("echo")
            assert sup.get("echo") is None
            assert "echo" not in sup.status()
            assert [e.name for e in sub.drain()] == ["echo"]
            result = await sup.registry.invoke("echo.echo")
            assert result.error.code == "UNKNOWN_CAPABILITY"

            # The name can be started again after unloading
            record = await sup.start(make_descriptor("echo_worker.py"))
            assert record.state == WorkerState.RUNNING

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, make_descriptor):
        """Test shutdown returns only after every worker exited."""
        sup = ProcessSupervisor()
        records = [
            await sup.start(make_descriptor("echo_worker.py", name=name))
            for name in ("one", "two", "three")
        ]
        processes = [r.process for r in records]
        pending = asyncio.ensure_future(sup.registry.invoke("one.slow", {"seconds": 30}))
        await asyncio.sleep(0.1)

        await sup.shutdown()
        assert all(p.returncode is not None for p in processes)
        assert all(r.state == WorkerState.STOPPED for r in records)
        result = await asyncio.wait_for(pending, 1.0)
        assert result.error.code == "WORKER_EXITED"


class TestIsolation:
    """Tests for per-worker independence."""

    @pytest.mark.asyncio
    async def test_stalled_worker_does_not_block_others(self, make_descriptor):
        """Test a call to a healthy worker completes while another stalls."""
        async with supervising() as sup:
            await asyncio.gather(
                sup.start(make_descriptor("echo_worker.py", name="stalled")),
                sup.start(make_descriptor("echo_worker.py", name="healthy")),
            )
            loop = asyncio.get_running_loop()
            stalled = asyncio.ensure_future(sup.registry.invoke("stalled.slow", {"seconds": 3}))
            await asyncio.sleep(0.05)

            started = loop.time()
            result = await sup.registry.invoke("healthy.echo", {"ok": True})
            elapsed = loop.time() - started

            assert result.result == {"ok": True}
            assert elapsed < 1.0
            assert not stalled.done()
            stalled.cancel()

    @pytest.mark.asyncio
    async def test_invocation_timeout_keeps_worker_running(self, make_descriptor):
        """Test a timed out invocation does not change the worker's state."""
        async with supervising() as sup:
            record = await sup.start(make_descriptor("echo_worker.py"))
            result = await sup.registry.invoke("echo.slow", {"seconds": 1}, timeout_s=0.1)
            assert result.error.code == "INVOCATION_TIMEOUT"
            assert record.state == WorkerState.RUNNING
            assert (await sup.registry.invoke("echo.echo", {"x": 1})).success

    @pytest.mark.asyncio
    async def test_crash_of_one_leaves_others_running(self, make_descriptor, eventually):
        """Test one worker's crash does not touch another."""
        async with supervising() as sup:
            a = await sup.start(make_descriptor("echo_worker.py", name="a", restart_policy=RestartPolicy.NEVER))
            b = await sup.start(make_descriptor("echo_worker.py", name="b"))
            await crash(sup, "a")
            await eventually(lambda: a.state == WorkerState.FAILED)
            assert b.state == WorkerState.RUNNING
            assert [n for n in qualified_names(sup) if n.startswith("a.")] == []
            assert "b.echo" in qualified_names(sup)
