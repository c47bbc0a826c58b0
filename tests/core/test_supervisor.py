"""
Unit Tests for TaskSupervisor and InProcessRunLauncher

Tests cover:
- Task tracking and completion
- Failures are logged, not raised
- Shutdown cancels running tasks
- Launching from the loop and from a worker thread
"""

import asyncio
import logging

import pytest

from agencyflow.core.supervisor import InProcessRunLauncher, TaskSupervisor


@pytest.mark.unit
@pytest.mark.asyncio
async def test_spawned_tasks_are_tracked_until_done():
    supervisor = TaskSupervisor()
    gate = asyncio.Event()

    async def work():
        await gate.wait()
        return "done"

    task = supervisor.spawn(work(), name="run-1")
    await asyncio.sleep(0)
    assert supervisor.active_count == 1
    assert task.get_name() == "run-1"

    gate.set()
    await supervisor.wait_idle()

    assert supervisor.active_count == 0
    assert task.result() == "done"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_task_is_logged(caplog):
    supervisor = TaskSupervisor()

    async def boom():
        raise ValueError("backend exploded")

    with caplog.at_level(logging.ERROR, logger="agencyflow.core.supervisor"):
        supervisor.spawn(boom(), name="run-2")
        await supervisor.wait_idle()

    assert "run-2 failed: backend exploded" in caplog.text


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shutdown_cancels_running_tasks():
    supervisor = TaskSupervisor()
    task = supervisor.spawn(asyncio.sleep(3600), name="run-3")
    await asyncio.sleep(0)

    await supervisor.shutdown()

    assert task.cancelled()
    assert supervisor.active_count == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_launcher_spawns_on_running_loop():
    supervisor = TaskSupervisor()
    executed = []

    async def run_workflow(run_id):
        executed.append(run_id)

    InProcessRunLauncher(supervisor, run_workflow).launch(5)
    await supervisor.wait_idle()

    assert executed == [5]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_launcher_schedules_onto_owning_loop_from_thread():
    supervisor = TaskSupervisor()
    executed = []

    async def run_workflow(run_id):
        executed.append(run_id)

    launcher = InProcessRunLauncher(supervisor, run_workflow, loop=asyncio.get_running_loop())

    await asyncio.to_thread(launcher.launch, 8)
    # call_soon_threadsafe callback runs on the next loop iteration
    await asyncio.sleep(0)
    await supervisor.wait_idle()

    assert executed == [8]


@pytest.mark.unit
def test_launcher_without_loop_raises():
    async def run_workflow(run_id):
        pass

    with pytest.raises(RuntimeError, match="No event loop"):
        InProcessRunLauncher(TaskSupervisor(), run_workflow).launch(1)
