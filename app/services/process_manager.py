"""
Process manager: subprocess handling for project scaffolds and dev servers.

Scaffold commands run to completion under a hard timeout. Dev servers are
long-lived and tracked in an in-memory handle cache keyed by project id.
The cache is only an optimization: after a restart the handles are gone
and ports are freed through kill_port().
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a command run to completion."""
    exit_code: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass
class ManagedProcess:
    """A long-running dev server."""
    project_id: str
    argv: List[str]
    cwd: str
    port: Optional[int] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    output_buffer: List[str] = field(default_factory=list)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    max_output_lines: int = 500
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def uptime(self) -> float:
        if not self.started_at:
            return 0
        end = self.ended_at or time.time()
        return end - self.started_at


class ProcessManager:
    """Spawn, track and terminate project subprocesses."""

    def __init__(self):
        self._processes: Dict[str, ManagedProcess] = {}
        self._watchers: set = set()

    async def run(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion, killing it when the timeout expires."""
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._merge_env(env),
            start_new_session=True,
        )
        logger.info(f"Started command (pid={process.pid}): {' '.join(argv)}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            self._kill_group(process.pid)
            stdout, _ = await process.communicate()
            logger.warning(f"Command timed out after {timeout}s (pid={process.pid})")
            return CommandResult(
                exit_code=process.returncode,
                output=(stdout or b"").decode("utf-8", errors="replace"),
                timed_out=True,
            )

        return CommandResult(
            exit_code=process.returncode,
            output=(stdout or b"").decode("utf-8", errors="replace"),
        )

    async def start(
        self,
        project_id: str,
        argv: Sequence[str],
        cwd: str,
        port: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ManagedProcess:
        """Spawn a dev server without waiting for it to become ready."""
        existing = self._processes.get(project_id)
        if existing and existing.running:
            await self.stop(project_id)

        proc = ManagedProcess(project_id=project_id, argv=list(argv), cwd=cwd, port=port)
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._merge_env(env),
            start_new_session=True,
        )
        proc._process = process
        proc.pid = process.pid
        proc.started_at = time.time()
        self._processes[project_id] = proc

        watcher = asyncio.create_task(self._watch(proc, process))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        logger.info(f"Started dev server for project {project_id} (pid={proc.pid}, port={port})")
        return proc

    async def _watch(self, proc: ManagedProcess, process: asyncio.subprocess.Process):
        """Drain output into the ring buffer and record the exit code."""
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            proc.output_buffer.append(line.decode("utf-8", errors="replace").rstrip())
            if len(proc.output_buffer) > proc.max_output_lines:
                proc.output_buffer.pop(0)
        proc.exit_code = await process.wait()
        proc.ended_at = time.time()
        logger.info(f"Dev server for project {proc.project_id} exited with {proc.exit_code}")

    async def stop(self, project_id: str, timeout: float = 5.0) -> bool:
        """Terminate a cached dev server. Returns False when nothing was running."""
        proc = self._processes.pop(project_id, None)
        if not proc or not proc.running:
            return False

        process = proc._process
        self._signal_group(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._kill_group(process.pid)
            await process.wait()
        proc.ended_at = time.time()
        return True

    def get(self, project_id: str) -> Optional[ManagedProcess]:
        return self._processes.get(project_id)

    def output(self, project_id: str, lines: int = 50) -> List[str]:
        proc = self._processes.get(project_id)
        return proc.output_buffer[-lines:] if proc else []

    async def stop_all(self) -> int:
        count = 0
        for project_id in list(self._processes):
            if await self.stop(project_id):
                count += 1
        return count

    async def kill_port(self, port: int) -> int:
        """
        Kill whatever listens on a port. Returns the number of processes
        signalled; "nothing to kill" and a missing lsof both return 0.
        """
        try:
            lsof = await asyncio.create_subprocess_exec(
                "lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.warning(f"lsof is not installed, cannot free port {port}")
            return 0

        stdout, _ = await lsof.communicate()
        killed = 0
        for token in stdout.decode().split():
            try:
                os.kill(int(token), signal.SIGKILL)
                killed += 1
            except (ValueError, ProcessLookupError, PermissionError):
                continue
        if killed:
            logger.info(f"Killed {killed} process(es) on port {port}")
        return killed

    @staticmethod
    async def is_listening(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    @staticmethod
    def _merge_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not env:
            return None
        merged = dict(os.environ)
        merged.update(env)
        return merged

    @staticmethod
    def _signal_group(pid: int, sig: int):
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass

    def _kill_group(self, pid: int):
        self._signal_group(pid, signal.SIGKILL)


_manager: Optional[ProcessManager] = None


def get_process_manager() -> ProcessManager:
    """Get the global process manager singleton."""
    global _manager
    if _manager is None:
        _manager = ProcessManager()
    return _manager
