"""
Tests for the project lifecycle manager (ports, scaffold, dev servers, build steps)
"""

import asyncio
import re
import sys

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.db import (
    init_db, drop_db, async_session_maker,
    Project, ProjectBuildStep, ProjectStatus, ProjectType, BuildStepStatus,
)
from app.services.auth_service import get_or_create_user
from app.services.process_manager import ProcessManager
from app.services.project_lifecycle import (
    NoPortAvailableError, ProjectLifecycleManager, ProjectNotFoundError, ProjectStateError,
)

USER_ID = "user-projects"
PORTS = (45100, 45104)


class FakeCommands:
    """Scaffold and dev-server commands that only need a Python interpreter"""

    def __init__(self, exit_code: int = 0, sleep: float = 0):
        self.exit_code = exit_code
        self.sleep = sleep
        self.scaffolded = []

    def scaffold(self, project_type, path):
        self.scaffolded.append(path)
        code = (
            "import os, sys, time\n"
            f"time.sleep({self.sleep})\n"
            "os.makedirs(sys.argv[1], exist_ok=True)\n"
            "print('scaffolded', sys.argv[1])\n"
            f"sys.exit({self.exit_code})\n"
        )
        return [sys.executable, "-c", code, path]

    def dev_server(self, project_type, port):
        return [sys.executable, "-c", "import time; time.sleep(60)"], {"PORT": str(port)}


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    async with async_session_maker() as db:
        await get_or_create_user(db, USER_ID)
    yield
    await drop_db()


@pytest_asyncio.fixture
async def process_manager():
    manager = ProcessManager()
    yield manager
    await manager.stop_all()


def make_lifecycle(process_manager, tmp_path, commands=None, port_range=PORTS, scaffold_timeout=10):
    return ProjectLifecycleManager(
        process_manager=process_manager,
        commands=commands or FakeCommands(),
        port_range=port_range,
        projects_dir=str(tmp_path),
        preview_domain="turion.test",
        scaffold_timeout=scaffold_timeout,
    )


@pytest.fixture
def lifecycle(process_manager, tmp_path):
    return make_lifecycle(process_manager, tmp_path)


async def new_project(lifecycle: ProjectLifecycleManager, name: str = "Todo App") -> Project:
    return await lifecycle.create_project(USER_ID, name, ProjectType.NEXTJS, description="A todo app")


async def set_status(project_id: str, status: ProjectStatus, **values):
    async with async_session_maker() as db:
        await db.execute(
            update(Project).where(Project.id == project_id).values(status=status.value, **values)
        )
        await db.commit()


# ============ Creation & queries ============

@pytest.mark.asyncio
async def test_new_project_is_planning(lifecycle):
    project = await new_project(lifecycle)

    assert project.status == ProjectStatus.PLANNING.value
    assert project.port is None
    fetched = await lifecycle.get_project(project.id, USER_ID)
    assert fetched.build_steps == []
    assert [p.id for p in await lifecycle.list_projects(USER_ID)] == [project.id]


@pytest.mark.asyncio
async def test_other_users_project_is_not_found(lifecycle):
    project = await new_project(lifecycle)
    with pytest.raises(ProjectNotFoundError):
        await lifecycle.get_project(project.id, "someone-else")


# ============ Ports & subdomains ============

def test_subdomain_format():
    subdomain = ProjectLifecycleManager.allocate_subdomain()
    assert re.fullmatch(r"proj-[a-z0-9]{6}", subdomain)


def test_preview_url(lifecycle):
    assert lifecycle.preview_url("proj-abc123") == "https://proj-abc123.preview.turion.test"


@pytest.mark.asyncio
async def test_concurrent_allocations_get_distinct_ports(lifecycle):
    projects = [await new_project(lifecycle, f"p{i}") for i in range(3)]

    ports = await asyncio.gather(*[lifecycle.allocate_port(p.id) for p in projects])

    assert len(set(ports)) == 3
    assert all(PORTS[0] <= port <= PORTS[1] for port in ports)


@pytest.mark.asyncio
async def test_ports_of_stopped_projects_are_reused(lifecycle):
    first = await new_project(lifecycle, "first")
    port = await lifecycle.allocate_port(first.id)
    await set_status(first.id, ProjectStatus.STOPPED)

    second = await new_project(lifecycle, "second")
    assert await lifecycle.allocate_port(second.id) == port


@pytest.mark.asyncio
async def test_exhausted_range_raises(process_manager, tmp_path):
    lifecycle = make_lifecycle(process_manager, tmp_path, port_range=(45100, 45100))
    first = await new_project(lifecycle, "first")
    await lifecycle.allocate_port(first.id)
    await set_status(first.id, ProjectStatus.READY)

    second = await new_project(lifecycle, "second")
    with pytest.raises(NoPortAvailableError):
        await lifecycle.allocate_port(second.id)


@pytest.mark.asyncio
async def test_storage_rejects_two_projects_holding_one_port(lifecycle):
    first = await new_project(lifecycle, "first")
    second = await new_project(lifecycle, "second")
    await set_status(first.id, ProjectStatus.READY, port=45100)

    with pytest.raises(IntegrityError):
        await set_status(second.id, ProjectStatus.RUNNING, port=45100)

    # stopped projects do not hold their port
    await set_status(second.id, ProjectStatus.STOPPED, port=45100)


@pytest.mark.asyncio
async def test_reservation_retries_when_port_taken_elsewhere(lifecycle, monkeypatch):
    first = await new_project(lifecycle, "first")
    await set_status(first.id, ProjectStatus.READY, port=PORTS[0])
    second = await new_project(lifecycle, "second")

    # first read is stale, as if another process reserved the port after it
    real_held_ports = lifecycle._held_ports
    reads = []

    async def stale_then_real(db, exclude_project_id=None):
        reads.append(exclude_project_id)
        if len(reads) == 1:
            return set()
        return await real_held_ports(db, exclude_project_id=exclude_project_id)

    monkeypatch.setattr(lifecycle, "_held_ports", stale_then_real)

    assert await lifecycle.allocate_port(second.id) == PORTS[0] + 1
    assert len(reads) == 2


# ============ Build steps ============

@pytest.mark.asyncio
async def test_build_steps_number_sequentially(lifecycle):
    project = await new_project(lifecycle)

    steps = [await lifecycle.create_step(project.id, f"step {i}") for i in range(3)]

    assert [s.step for s in steps] == [1, 2, 3]
    assert all(s.status == BuildStepStatus.IN_PROGRESS.value for s in steps)


@pytest.mark.asyncio
async def test_terminal_steps_are_never_reopened(lifecycle):
    project = await new_project(lifecycle)
    step = await lifecycle.create_step(project.id, "Install", BuildStepStatus.PENDING)

    assert await lifecycle.complete_step(project.id, step.step, "done")
    assert not await lifecycle.fail_step(project.id, step.step, "late failure")
    assert not await lifecycle.complete_step(project.id, step.step, "again")

    fetched = await lifecycle.get_project(project.id)
    assert fetched.build_steps[0].status == BuildStepStatus.COMPLETED.value
    assert fetched.build_steps[0].output == "done"


# ============ Scaffold ============

@pytest.mark.asyncio
async def test_scaffold_success(lifecycle):
    project = await new_project(lifecycle)

    started = await lifecycle.scaffold(project.id, USER_ID)
    assert started.status == ProjectStatus.GENERATING.value
    assert started.port == PORTS[0]
    assert started.subdomain.startswith("proj-")
    assert started.preview_url == f"https://{started.subdomain}.preview.turion.test"
    assert [(s.step, s.status) for s in started.build_steps] == [(1, BuildStepStatus.IN_PROGRESS.value)]

    await lifecycle.drain()

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.READY.value
    assert project.build_steps[0].status == BuildStepStatus.COMPLETED.value
    assert "scaffolded" in project.build_steps[0].output
    assert project.error_log is None


@pytest.mark.asyncio
async def test_concurrent_scaffold_of_one_project_reserves_once(lifecycle):
    project = await new_project(lifecycle)

    results = await asyncio.gather(
        lifecycle.scaffold(project.id, USER_ID),
        lifecycle.scaffold(project.id, USER_ID),
        return_exceptions=True,
    )
    await lifecycle.drain()

    rejected = [r for r in results if isinstance(r, ProjectStateError)]
    accepted = [r for r in results if isinstance(r, Project)]
    assert len(rejected) == 1 and len(accepted) == 1
    assert rejected[0].status == ProjectStatus.GENERATING.value

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.port == accepted[0].port
    assert len(project.build_steps) == 1
    assert len(lifecycle.commands.scaffolded) == 1


@pytest.mark.asyncio
async def test_concurrent_scaffolds_of_two_projects_get_distinct_ports(lifecycle):
    first = await new_project(lifecycle, "first")
    second = await new_project(lifecycle, "second")

    a, b = await asyncio.gather(
        lifecycle.scaffold(first.id, USER_ID),
        lifecycle.scaffold(second.id, USER_ID),
    )
    await lifecycle.drain()

    assert a.port != b.port


@pytest.mark.asyncio
async def test_scaffold_failure_moves_to_error(process_manager, tmp_path):
    lifecycle = make_lifecycle(process_manager, tmp_path, commands=FakeCommands(exit_code=3))
    project = await new_project(lifecycle)

    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.ERROR.value
    assert "exited with code 3" in project.error_log
    assert "scaffolded" in project.error_log
    assert project.build_steps[0].status == BuildStepStatus.FAILED.value


@pytest.mark.asyncio
async def test_scaffold_timeout_moves_to_error(process_manager, tmp_path):
    lifecycle = make_lifecycle(
        process_manager, tmp_path, commands=FakeCommands(sleep=30), scaffold_timeout=0.5,
    )
    project = await new_project(lifecycle)

    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.ERROR.value
    assert "timed out" in project.error_log
    assert project.build_steps[0].status == BuildStepStatus.FAILED.value


@pytest.mark.asyncio
async def test_scaffold_can_be_retried_from_error(process_manager, tmp_path):
    commands = FakeCommands(exit_code=1)
    lifecycle = make_lifecycle(process_manager, tmp_path, commands=commands)
    project = await new_project(lifecycle)
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    commands.exit_code = 0
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.READY.value
    assert [s.status for s in project.build_steps] == [
        BuildStepStatus.FAILED.value, BuildStepStatus.COMPLETED.value,
    ]
    assert project.error_log is None


@pytest.mark.asyncio
async def test_scaffold_without_free_port_moves_to_error(process_manager, tmp_path):
    lifecycle = make_lifecycle(process_manager, tmp_path, port_range=(45100, 45100))
    first = await new_project(lifecycle, "first")
    await lifecycle.scaffold(first.id, USER_ID)
    await lifecycle.drain()

    second = await new_project(lifecycle, "second")
    with pytest.raises(NoPortAvailableError):
        await lifecycle.scaffold(second.id, USER_ID)

    second = await lifecycle.get_project(second.id, USER_ID)
    assert second.status == ProjectStatus.ERROR.value
    assert "No port available" in second.error_log


class BrokenCommands(FakeCommands):
    def scaffold(self, project_type, path):
        raise ValueError("unknown template for project type")


@pytest.mark.asyncio
async def test_unexpected_scaffold_error_moves_to_error(process_manager, tmp_path):
    lifecycle = make_lifecycle(process_manager, tmp_path, commands=BrokenCommands())
    project = await new_project(lifecycle)

    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.ERROR.value
    assert "unknown template" in project.error_log
    assert project.build_steps[0].status == BuildStepStatus.FAILED.value

    lifecycle.commands = FakeCommands()
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()
    assert (await lifecycle.get_project(project.id, USER_ID)).status == ProjectStatus.READY.value


# ============ Start / stop ============

@pytest.mark.asyncio
async def test_failed_project_cannot_be_stopped_or_started(process_manager, tmp_path):
    lifecycle = make_lifecycle(process_manager, tmp_path, commands=FakeCommands(exit_code=3))
    project = await new_project(lifecycle)
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()
    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.ERROR.value
    assert project.port is not None

    with pytest.raises(ProjectStateError):
        await lifecycle.stop(project.id, USER_ID)
    with pytest.raises(ProjectStateError):
        await lifecycle.start(project.id, USER_ID)

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.ERROR.value
    assert process_manager.get(project.id) is None

@pytest.mark.asyncio
async def test_start_and_stop(lifecycle, process_manager):
    project = await new_project(lifecycle)
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()

    running = await lifecycle.start(project.id, USER_ID)
    assert running.status == ProjectStatus.RUNNING.value
    assert running.last_accessed_at is not None
    assert process_manager.get(project.id).running

    stopped = await lifecycle.stop(project.id, USER_ID)
    assert stopped.status == ProjectStatus.STOPPED.value
    assert process_manager.get(project.id) is None

    # stop is idempotent
    again = await lifecycle.stop(project.id, USER_ID)
    assert again.status == ProjectStatus.STOPPED.value


@pytest.mark.asyncio
async def test_start_again_after_stop(lifecycle, process_manager):
    project = await new_project(lifecycle)
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()
    await lifecycle.start(project.id, USER_ID)
    await lifecycle.stop(project.id, USER_ID)

    restarted = await lifecycle.start(project.id, USER_ID)
    assert restarted.status == ProjectStatus.RUNNING.value
    assert process_manager.get(project.id).running


@pytest.mark.asyncio
async def test_start_requires_ready_project(lifecycle, process_manager):
    project = await new_project(lifecycle)

    with pytest.raises(ProjectStateError):
        await lifecycle.start(project.id, USER_ID)

    project = await lifecycle.get_project(project.id, USER_ID)
    assert project.status == ProjectStatus.PLANNING.value
    assert process_manager.get(project.id) is None


@pytest.mark.asyncio
async def test_stop_requires_reserved_port(lifecycle, process_manager, monkeypatch):
    project = await new_project(lifecycle)
    calls = []

    async def record_kill_port(port):
        calls.append(port)
        return 0

    monkeypatch.setattr(process_manager, "kill_port", record_kill_port)

    with pytest.raises(ProjectStateError):
        await lifecycle.stop(project.id, USER_ID)
    assert calls == []


@pytest.mark.asyncio
async def test_delete_stops_running_project(lifecycle, process_manager):
    project = await new_project(lifecycle)
    await lifecycle.scaffold(project.id, USER_ID)
    await lifecycle.drain()
    await lifecycle.start(project.id, USER_ID)

    await lifecycle.delete(project.id, USER_ID)

    assert process_manager.get(project.id) is None
    with pytest.raises(ProjectNotFoundError):
        await lifecycle.get_project(project.id, USER_ID)


# ============ Reconcile ============

@pytest.mark.asyncio
async def test_reconcile_repairs_rows_after_restart(lifecycle):
    interrupted = await new_project(lifecycle, "interrupted")
    await set_status(interrupted.id, ProjectStatus.GENERATING, port=45100)
    await lifecycle.create_step(interrupted.id, "Scaffolding project")

    orphaned = await new_project(lifecycle, "orphaned")
    await set_status(orphaned.id, ProjectStatus.RUNNING, port=45101)

    ready = await new_project(lifecycle, "ready")
    await set_status(ready.id, ProjectStatus.READY, port=45102)

    counts = await lifecycle.reconcile()

    assert counts == {"interrupted": 1, "stopped": 1}
    interrupted = await lifecycle.get_project(interrupted.id)
    assert interrupted.status == ProjectStatus.ERROR.value
    assert interrupted.build_steps[0].status == BuildStepStatus.FAILED.value
    assert (await lifecycle.get_project(orphaned.id)).status == ProjectStatus.STOPPED.value
    assert (await lifecycle.get_project(ready.id)).status == ProjectStatus.READY.value
