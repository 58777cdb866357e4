"""
Project lifecycle - ports, subdomains, scaffold and dev-server processes.

State machine per project:

    planning -> generating -> ready -> running -> stopped
                    |                     |
                    +------> error <------+

stopped and error are only left through an explicit user action (start
again, scaffold again). Nothing retries automatically.

The project row (status, port, subdomain, path) is the source of truth.
Live process handles are a cache held by ProcessManager; reconcile() brings
rows back in line after a restart.

Port allocation happens under a lock and writes the port to the project
row before the lock is released, so concurrent scaffolds never share a
port. Across processes the partial unique index on held ports
(uq_projects_held_port) rejects a duplicate and the allocation retries.
A second scaffold on the same project is rejected by a conditional
status update before any port is touched.
"""

import asyncio
import logging
import os
import re
import secrets
import string
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.db import (
    async_session_maker, Project, ProjectBuildStep, ProjectStatus, ProjectType, BuildStepStatus,
    PORT_HOLDING_STATUSES,
)
from app.services.process_manager import CommandResult, ProcessManager, get_process_manager

logger = logging.getLogger(__name__)

SUBDOMAIN_PREFIX = "proj-"
SUBDOMAIN_LENGTH = 6
SCAFFOLD_STEP_TITLE = "Scaffolding project"

SCAFFOLDABLE_STATUSES = (ProjectStatus.PLANNING.value, ProjectStatus.ERROR.value)
STARTABLE_STATUSES = (ProjectStatus.READY.value, ProjectStatus.STOPPED.value)
STOPPABLE_STATUSES = (ProjectStatus.READY.value, ProjectStatus.RUNNING.value, ProjectStatus.STOPPED.value)
MAX_PORT_ATTEMPTS = 5
OPEN_STEP_STATUSES = (BuildStepStatus.PENDING.value, BuildStepStatus.IN_PROGRESS.value)


class NoPortAvailableError(Exception):
    """Every port in the configured range is taken."""


class ProjectNotFoundError(Exception):
    """Project does not exist or belongs to another user."""


class ProjectStateError(Exception):
    """The requested transition is not allowed from the project's status."""

    def __init__(self, project_id: str, status: str, action: str):
        self.project_id = project_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} project {project_id} in status '{status}'")


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "project"


class ProjectCommands:
    """Commands for each project type. Replaced by a fake in tests."""

    def scaffold(self, project_type: ProjectType, path: str) -> List[str]:
        if project_type == ProjectType.NEXTJS:
            return [
                "npx", "create-next-app@latest", path,
                "--typescript", "--tailwind", "--app", "--no-src-dir",
                "--import-alias", "@/*", "--yes",
            ]
        if project_type == ProjectType.REACT:
            return ["npx", "create-react-app", path, "--template", "typescript"]
        return ["npx", "create-expo-app@latest", path, "--template", "blank-typescript"]

    def dev_server(self, project_type: ProjectType, port: int) -> Tuple[List[str], Dict[str, str]]:
        if project_type == ProjectType.NEXTJS:
            return ["npm", "run", "dev"], {"PORT": str(port)}
        if project_type == ProjectType.REACT:
            return ["npm", "start"], {"PORT": str(port), "BROWSER": "none"}
        return ["npx", "expo", "start", "--port", str(port)], {}


class ProjectLifecycleManager:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        process_manager: Optional[ProcessManager] = None,
        commands: Optional[ProjectCommands] = None,
        port_range: Optional[Tuple[int, int]] = None,
        projects_dir: Optional[str] = None,
        preview_domain: Optional[str] = None,
        scaffold_timeout: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.process_manager = process_manager or get_process_manager()
        self.commands = commands or ProjectCommands()
        self.port_range = port_range or (settings.port_range_start, settings.port_range_end)
        self.projects_dir = os.path.abspath(projects_dir or settings.projects_dir)
        self.preview_domain = preview_domain or settings.preview_domain
        self.scaffold_timeout = scaffold_timeout or settings.scaffold_timeout_seconds
        self._port_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def port_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._port_lock is None or self._lock_loop is not loop:
            self._port_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._port_lock

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self):
        """Wait for running scaffolds."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _bounded(self, text: str) -> str:
        limit = settings.max_error_log_chars
        return text if len(text) <= limit else text[-limit:]

    # ── Queries ───────────────────────────────────────────────

    async def create_project(
        self,
        user_id: str,
        name: str,
        project_type: ProjectType,
        description: Optional[str] = None,
    ) -> Project:
        async with self._session_factory() as db:
            project = Project(
                user_id=user_id,
                name=name,
                description=description,
                project_type=ProjectType(project_type).value,
                status=ProjectStatus.PLANNING.value,
            )
            db.add(project)
            await db.commit()
            logger.info(f"Created project {project.id} ({project.project_type}) for user {user_id}")
            return project

    async def get_project(self, project_id: str, user_id: Optional[str] = None) -> Project:
        async with self._session_factory() as db:
            query = (
                select(Project)
                .options(selectinload(Project.build_steps))
                .where(Project.id == project_id)
            )
            if user_id is not None:
                query = query.where(Project.user_id == user_id)
            result = await db.execute(query)
            project = result.scalar_one_or_none()
            if project is None:
                raise ProjectNotFoundError(project_id)
            return project

    async def list_projects(self, user_id: str) -> List[Project]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Project)
                .where(Project.user_id == user_id)
                .order_by(Project.updated_at.desc())
            )
            return list(result.scalars().all())

    # ── Ports & subdomains ────────────────────────────────────

    async def _held_ports(self, db: AsyncSession, exclude_project_id: Optional[str] = None) -> Set[int]:
        query = select(Project.port).where(
            Project.port.is_not(None),
            Project.status.in_(PORT_HOLDING_STATUSES),
        )
        if exclude_project_id:
            query = query.where(Project.id != exclude_project_id)
        result = await db.execute(query)
        return {port for port in result.scalars().all()}

    async def allocate_port(self, project_id: str) -> int:
        """
        Reserve the first free port in range for a project and write it to
        the project row. Raises NoPortAvailableError when the range is full.
        """
        async with self.port_lock:
            return await self._reserve_port(project_id)

    async def _reserve_port(self, project_id: str) -> int:
        # Caller holds port_lock. Another process can still pick the same
        # port; the uq_projects_held_port index rejects the second write.
        start, end = self.port_range
        for _ in range(MAX_PORT_ATTEMPTS):
            async with self._session_factory() as db:
                held = await self._held_ports(db, exclude_project_id=project_id)
                port = next((p for p in range(start, end + 1) if p not in held), None)
                if port is None:
                    raise NoPortAvailableError(f"No port available in range {start}-{end}")
                try:
                    await db.execute(
                        update(Project).where(Project.id == project_id).values(port=port)
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.warning(f"Port {port} was taken concurrently, retrying for project {project_id}")
                    continue
            logger.info(f"Allocated port {port} to project {project_id}")
            return port
        raise NoPortAvailableError(f"Could not reserve a port in range {start}-{end}")

    @staticmethod
    def allocate_subdomain() -> str:
        """
        Random subdomain with a fixed prefix. Not checked against existing
        rows; 36^6 combinations make a collision unlikely, not impossible.
        """
        alphabet = string.ascii_lowercase + string.digits
        return SUBDOMAIN_PREFIX + "".join(secrets.choice(alphabet) for _ in range(SUBDOMAIN_LENGTH))

    def preview_url(self, subdomain: str) -> str:
        return f"https://{subdomain}.preview.{self.preview_domain}"

    # ── Build steps ───────────────────────────────────────────

    async def create_step(
        self,
        project_id: str,
        title: str,
        status: BuildStepStatus = BuildStepStatus.IN_PROGRESS,
    ) -> ProjectBuildStep:
        """Append a step numbered after the project's last one."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.max(ProjectBuildStep.step)).where(ProjectBuildStep.project_id == project_id)
            )
            last = result.scalar_one_or_none() or 0
            step = ProjectBuildStep(
                project_id=project_id,
                step=last + 1,
                title=title,
                status=BuildStepStatus(status).value,
            )
            db.add(step)
            await db.commit()
            return step

    async def _close_step(self, project_id: str, step: int, status: BuildStepStatus, output: Optional[str]) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProjectBuildStep)
                .where(
                    ProjectBuildStep.project_id == project_id,
                    ProjectBuildStep.step == step,
                    ProjectBuildStep.status.in_(OPEN_STEP_STATUSES),
                )
                .values(status=status.value, output=output, completed_at=datetime.utcnow())
            )
            await db.commit()
        if result.rowcount == 0:
            logger.warning(f"Build step {step} of project {project_id} is not open, ignoring {status.value}")
            return False
        return True

    async def complete_step(self, project_id: str, step: int, output: Optional[str] = None) -> bool:
        """Mark an open step completed. Returns False (no-op) when already terminal."""
        return await self._close_step(project_id, step, BuildStepStatus.COMPLETED, output)

    async def fail_step(self, project_id: str, step: int, output: Optional[str] = None) -> bool:
        """Mark an open step failed. Returns False (no-op) when already terminal."""
        return await self._close_step(project_id, step, BuildStepStatus.FAILED, output)

    # ── Transitions ───────────────────────────────────────────

    async def _transition(self, project_id: str, from_statuses, to_status: ProjectStatus, **values) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Project)
                .where(Project.id == project_id, Project.status.in_(list(from_statuses)))
                .values(status=to_status.value, updated_at=datetime.utcnow(), **values)
            )
            await db.commit()
            return result.rowcount == 1

    async def _mark_error(self, project_id: str, message: str):
        async with self._session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(
                    status=ProjectStatus.ERROR.value,
                    error_log=self._bounded(message),
                    updated_at=datetime.utcnow(),
                )
            )
            await db.commit()
        logger.error(f"Project {project_id} moved to error: {message[:200]}")

    async def begin_scaffold(self, project_id: str, user_id: str) -> Tuple[Project, ProjectBuildStep]:
        """
        Claim the project for scaffolding and reserve its resources.

        planning/error -> generating is a conditional update, so of two
        concurrent calls only one gets past this point.
        """
        project = await self.get_project(project_id, user_id)
        # The port is released here and reserved again below; a project in
        # error may have lost it to another project meanwhile
        claimed = await self._transition(
            project_id, SCAFFOLDABLE_STATUSES, ProjectStatus.GENERATING, error_log=None, port=None,
        )
        if not claimed:
            current = await self.get_project(project_id, user_id)
            raise ProjectStateError(project_id, current.status, "scaffold")

        try:
            port = await self.allocate_port(project_id)
        except NoPortAvailableError as e:
            await self._mark_error(project_id, str(e))
            raise

        subdomain = project.subdomain or self.allocate_subdomain()
        project_path = project.project_path or os.path.join(
            self.projects_dir, f"{slugify(project.name)}-{project.id[:8]}"
        )
        async with self._session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(
                    subdomain=subdomain,
                    preview_url=self.preview_url(subdomain),
                    project_path=project_path,
                )
            )
            await db.commit()

        step = await self.create_step(project_id, SCAFFOLD_STEP_TITLE)
        logger.info(f"Scaffolding project {project_id} on port {port} ({subdomain})")
        return await self.get_project(project_id, user_id), step

    async def scaffold(self, project_id: str, user_id: str) -> Project:
        """Start scaffolding in the background and return immediately."""
        project, step = await self.begin_scaffold(project_id, user_id)
        self._spawn(self._run_scaffold(project, step.step))
        return project

    async def _run_scaffold(self, project: Project, step: int):
        """Background scaffold. Whatever goes wrong, the project leaves generating."""
        try:
            await self._scaffold(project, step)
        except Exception as e:
            logger.exception(f"Scaffold of project {project.id} failed unexpectedly")
            diagnostic = f"Scaffold failed: {e}"
            await self.fail_step(project.id, step, self._bounded(diagnostic))
            await self._mark_error(project.id, diagnostic)

    async def _scaffold(self, project: Project, step: int):
        try:
            argv = self.commands.scaffold(ProjectType(project.project_type), project.project_path)
            os.makedirs(self.projects_dir, exist_ok=True)
            result = await self.process_manager.run(
                argv, cwd=self.projects_dir, timeout=self.scaffold_timeout,
            )
        except OSError as e:
            result = CommandResult(exit_code=None, output=f"Failed to spawn scaffold command: {e}")

        if result.ok:
            await self.complete_step(project.id, step, self._bounded(result.output))
            if not await self._transition(project.id, (ProjectStatus.GENERATING.value,), ProjectStatus.READY):
                logger.warning(f"Project {project.id} left generating during scaffold")
            else:
                logger.info(f"Project {project.id} scaffolded")
            return

        if result.timed_out:
            reason = f"Scaffold timed out after {self.scaffold_timeout}s"
        elif result.exit_code is None:
            reason = "Scaffold could not be started"
        else:
            reason = f"Scaffold exited with code {result.exit_code}"
        diagnostic = f"{reason}\n{result.output}".strip()
        await self.fail_step(project.id, step, self._bounded(diagnostic))
        await self._mark_error(project.id, diagnostic)

    async def start(self, project_id: str, user_id: str) -> Project:
        """
        Spawn the dev server and mark the project running without waiting
        for it to come up. A crashed server is not detected; status only
        changes again through stop().
        """
        project = await self.get_project(project_id, user_id)
        if project.status not in STARTABLE_STATUSES:
            raise ProjectStateError(project_id, project.status, "start")
        if project.port is None or not project.project_path:
            raise ProjectStateError(project_id, project.status, "start")

        port = project.port
        async with self.port_lock:
            async with self._session_factory() as db:
                held = await self._held_ports(db, exclude_project_id=project_id)
            if port in held:
                # A stopped project's port may have been handed to another project
                port = await self._reserve_port(project_id)

            try:
                claimed = await self._transition(
                    project_id, STARTABLE_STATUSES, ProjectStatus.RUNNING,
                    last_accessed_at=datetime.utcnow(),
                )
            except IntegrityError:
                # Another process reserved the port after the check above
                port = await self._reserve_port(project_id)
                claimed = await self._transition(
                    project_id, STARTABLE_STATUSES, ProjectStatus.RUNNING,
                    last_accessed_at=datetime.utcnow(),
                )
        if not claimed:
            current = await self.get_project(project_id, user_id)
            raise ProjectStateError(project_id, current.status, "start")

        argv, env = self.commands.dev_server(ProjectType(project.project_type), port)
        try:
            await self.process_manager.start(project_id, argv, cwd=project.project_path, port=port, env=env)
        except OSError as e:
            await self._mark_error(project_id, f"Failed to start dev server: {e}")
            raise

        return await self.get_project(project_id, user_id)

    async def stop(self, project_id: str, user_id: str) -> Project:
        """
        Kill whatever owns the project's port and mark it stopped.

        Only ready, running and stopped projects can be stopped (stopping a
        stopped one is a no-op). error is left only by scaffolding again.
        """
        project = await self.get_project(project_id, user_id)
        if project.port is None or project.status not in STOPPABLE_STATUSES:
            raise ProjectStateError(project_id, project.status, "stop")

        await self.process_manager.stop(project_id)
        await self.process_manager.kill_port(project.port)

        async with self._session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=ProjectStatus.STOPPED.value, updated_at=datetime.utcnow())
            )
            await db.commit()
        logger.info(f"Stopped project {project_id} (port {project.port})")
        return await self.get_project(project_id, user_id)

    async def delete(self, project_id: str, user_id: str):
        project = await self.get_project(project_id, user_id)
        if project.status == ProjectStatus.RUNNING.value and project.port is not None:
            await self.process_manager.stop(project_id)
            await self.process_manager.kill_port(project.port)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Project).options(selectinload(Project.build_steps)).where(Project.id == project_id)
            )
            await db.delete(result.scalar_one())
            await db.commit()

    async def reconcile(self) -> Dict[str, int]:
        """
        Repair rows after a restart: interrupted scaffolds become errors and
        running projects with nothing listening on their port become stopped.
        """
        counts = {"interrupted": 0, "stopped": 0}
        async with self._session_factory() as db:
            result = await db.execute(
                select(Project).where(
                    Project.status.in_([ProjectStatus.GENERATING.value, ProjectStatus.RUNNING.value])
                )
            )
            projects = list(result.scalars().all())

        for project in projects:
            if project.status == ProjectStatus.GENERATING.value:
                async with self._session_factory() as db:
                    await db.execute(
                        update(ProjectBuildStep)
                        .where(
                            ProjectBuildStep.project_id == project.id,
                            ProjectBuildStep.status.in_(OPEN_STEP_STATUSES),
                        )
                        .values(
                            status=BuildStepStatus.FAILED.value,
                            output="Interrupted by server restart",
                            completed_at=datetime.utcnow(),
                        )
                    )
                    await db.commit()
                await self._mark_error(project.id, "Scaffold interrupted by server restart")
                counts["interrupted"] += 1
            elif project.port is None or not await self.process_manager.is_listening(project.port):
                await self._transition(project.id, (ProjectStatus.RUNNING.value,), ProjectStatus.STOPPED)
                counts["stopped"] += 1

        if counts["interrupted"] or counts["stopped"]:
            logger.info(f"Reconciled projects: {counts}")
        return counts


# Singleton instance
_lifecycle_manager: Optional[ProjectLifecycleManager] = None


def get_lifecycle_manager() -> ProjectLifecycleManager:
    """Get the project lifecycle manager singleton."""
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = ProjectLifecycleManager()
    return _lifecycle_manager
