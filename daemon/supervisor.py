"""
Process supervisor.

Owns every child process the agent spawns for an app: starting dev
servers in their own process group, streaming their output as log
events, classifying how they exited, and stopping them with a
SIGTERM -> grace period -> SIGKILL escalation. Also runs one-shot
install/build jobs through the app's package manager.

The process table is the only shared mutable state in the agent. It is
keyed by app id and holds at most one ManagedProcess per id. Operations
that add or remove an entry for an app (start, stop, restart, build) are
serialized per app id.
"""

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from core.errors import ConfigurationError, ExitError, ResourceConflict, SpawnError
from core.models import AppConfig, LogStream, ProcessStatus
from daemon import events
from daemon.events import EventBus
from daemon.ports import kill_process_group, listening_port_for_pid, listening_ports, pids_on_port

STOP_GRACE_SECONDS = 5.0
KILL_CONFIRM_SECONDS = 2.0
RESTART_SETTLE_SECONDS = 0.5
PORT_CHECK_DELAY_SECONDS = 3.0
UNMANAGED_POLL_SECONDS = 0.25
PIPE_DRAIN_SECONDS = 1.0
PIPE_LIMIT = 1024 * 1024  # longer output lines are split across log events

SHELL = "/bin/bash"


# ---------------------------------------------------------------------------
# Package manager commands
# ---------------------------------------------------------------------------


class PackageManagerCommands(NamedTuple):
    install: str
    build: str
    start: str


PACKAGE_MANAGERS: dict[str, PackageManagerCommands] = {
    "npm": PackageManagerCommands("npm install", "npm run build", "npm start"),
    "pnpm": PackageManagerCommands("pnpm install", "pnpm build", "pnpm start"),
    "yarn": PackageManagerCommands("yarn", "yarn build", "yarn start"),
    "bun": PackageManagerCommands("bun install", "bun run build", "bun start"),
}


def commands_for(package_manager: Optional[str]) -> PackageManagerCommands:
    """Command set for a package manager tag; unknown or missing means npm."""
    return PACKAGE_MANAGERS.get(package_manager or "npm", PACKAGE_MANAGERS["npm"])


def exit_reason(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"Killed by signal {name}"
    return f"Exited with code {returncode}"


def classify_exit(returncode: int) -> ProcessStatus:
    """Clean exit or SIGTERM means stopped; anything else is an error."""
    if returncode == 0 or returncode == -signal.SIGTERM:
        return ProcessStatus.STOPPED
    return ProcessStatus.ERROR


# ---------------------------------------------------------------------------
# Managed process record
# ---------------------------------------------------------------------------


@dataclass
class ManagedProcess:
    app: AppConfig
    process: asyncio.subprocess.Process
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )
    stopping: bool = False
    watcher: Optional[asyncio.Task] = None

    @property
    def app_id(self) -> int:
        return self.app.id

    @property
    def pid(self) -> int:
        return self.process.pid


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ProcessSupervisor:
    """Spawns, tracks and stops app processes."""

    def __init__(
        self,
        event_bus: EventBus,
        logger: logging.Logger,
        *,
        stop_grace: float = STOP_GRACE_SECONDS,
        restart_settle: float = RESTART_SETTLE_SECONDS,
        port_check_delay: float = PORT_CHECK_DELAY_SECONDS,
    ) -> None:
        self.events = event_bus
        self.log = logger
        self.stop_grace = stop_grace
        self.restart_settle = restart_settle
        self.port_check_delay = port_check_delay
        self._processes: dict[int, ManagedProcess] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- Table access --

    def get(self, app_id: int) -> Optional[ManagedProcess]:
        return self._processes.get(app_id)

    def is_managed(self, app_id: int) -> bool:
        return app_id in self._processes

    def managed(self) -> list[ManagedProcess]:
        return list(self._processes.values())

    def managed_apps(self) -> list[tuple[int, int]]:
        """(app_id, pid) for every managed process, for resync on connect."""
        return [(m.app_id, m.pid) for m in self._processes.values()]

    def forget(self, app_id: int) -> Optional[ManagedProcess]:
        """Drop the table entry without signalling anything."""
        return self._processes.pop(app_id, None)

    @asynccontextmanager
    async def _app_lock(self, app_id: int):
        """Serialize table-changing operations for one app id.

        The lock is dropped once nobody holds or waits for it.
        """
        lock = self._locks.setdefault(app_id, asyncio.Lock())
        self._lock_users[app_id] = self._lock_users.get(app_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[app_id] -= 1
            if self._lock_users[app_id] == 0:
                del self._lock_users[app_id]
                del self._locks[app_id]

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- Public lifecycle --

    async def start(self, app: AppConfig) -> ManagedProcess:
        async with self._app_lock(app.id):
            return await self._start_locked(app)

    async def stop(self, app: AppConfig) -> None:
        async with self._app_lock(app.id):
            await self._stop_locked(app)

    async def restart(self, app: AppConfig) -> ManagedProcess:
        async with self._app_lock(app.id):
            try:
                await self._stop_locked(app)
            except Exception as e:
                self.log.warning(f"App {app.id}: stop before restart failed: {e}")
                self.events.system(app.id, f"Stop error: {e}")
            await asyncio.sleep(self.restart_settle)
            return await self._start_locked(app)

    async def install_deps(self, app: AppConfig, force: bool = False) -> None:
        if not app.local_path:
            raise ConfigurationError("No local path configured")
        cmd = commands_for(app.package_manager).install
        if force:
            cmd = f"{cmd} --force"
        code = await self._run_job(app.id, cmd, app.local_path)
        if code != 0:
            raise ExitError(f"Install failed (exit {code})", code)

    async def build_app(self, app: AppConfig, then_start: bool = False) -> Optional[ManagedProcess]:
        if not app.local_path:
            raise ConfigurationError("No local path configured")

        if self.is_managed(app.id):
            async with self._app_lock(app.id):
                if self.is_managed(app.id):
                    await self._stop_locked(app)

        commands = commands_for(app.package_manager)
        code = await self._run_job(app.id, commands.build, app.local_path)
        if code != 0:
            self.events.status(app.id, ProcessStatus.ERROR)
            raise ExitError(f"Build failed (exit {code})", code)

        if not then_start:
            return None

        self.events.system(app.id, f"Build done, starting: {commands.start}")
        async with self._app_lock(app.id):
            if self.is_managed(app.id):
                raise ResourceConflict("Already running")
            return await self._launch(app, commands.start)

    async def shutdown(self) -> None:
        """Stop every managed process group (agent shutdown)."""
        managed = self.managed()
        if managed:
            self.log.info(f"Stopping {len(managed)} managed process(es)")
        await asyncio.gather(
            *(self.stop(m.app) for m in managed), return_exceptions=True,
        )
        for task in list(self._tasks):
            task.cancel()

    # -- Start --

    async def _start_locked(self, app: AppConfig) -> ManagedProcess:
        if self.is_managed(app.id):
            raise ResourceConflict("Already running")
        if not app.dev_command:
            raise ConfigurationError("No dev command configured")
        if not app.local_path:
            raise ConfigurationError("No local path configured")
        if app.port and app.port in await asyncio.to_thread(listening_ports):
            raise ResourceConflict(
                f"Port {app.port} is already in use; stop the existing process first"
            )
        return await self._launch(app, app.dev_command)

    async def _launch(self, app: AppConfig, command: str) -> ManagedProcess:
        """Spawn command in its own process group and start tracking it."""
        self.events.status(app.id, ProcessStatus.STARTING)
        self.events.system(app.id, f"Starting: {command}")

        env = dict(os.environ)
        if app.port:
            env["PORT"] = str(app.port)

        try:
            proc = await asyncio.create_subprocess_exec(
                SHELL, "-c", command,
                cwd=app.local_path,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=PIPE_LIMIT,
            )
        except OSError as e:
            self.events.status(app.id, ProcessStatus.ERROR)
            self.log.error(f"App {app.id}: spawn failed: {e}")
            raise SpawnError(str(e)) from e

        managed = ManagedProcess(app=app, process=proc)
        self._processes[app.id] = managed
        self.events.status(app.id, ProcessStatus.RUNNING, proc.pid)
        self.events.system(app.id, f"Started with PID {proc.pid}")
        self.log.info(f"App {app.id} ({app.name}): started PID {proc.pid}")

        managed.watcher = self._spawn_task(self._watch(managed))
        if not app.port:
            self._spawn_task(self._detect_port(managed))
        return managed

    @staticmethod
    async def _read_line(stream: asyncio.StreamReader) -> bytes:
        """Next line, or the next newline-free chunk of an over-long line."""
        try:
            return await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # EOF: unterminated last line, or b"" when drained
            return e.partial
        except asyncio.LimitOverrunError as e:
            # Nothing was consumed; take everything before the newline (or
            # the whole buffer) and leave the rest for the next read
            return await stream.read(e.consumed)

    async def _pump(self, app_id: int, stream: Optional[asyncio.StreamReader], kind: LogStream) -> None:
        if stream is None:
            return
        while True:
            raw = await self._read_line(stream)
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                self.events.log_line(app_id, kind, line)

    async def _drain(self, app_id: int, proc: asyncio.subprocess.Process) -> int:
        """Stream both pipes until the process exits; return its exit code."""
        pumps = [
            asyncio.create_task(self._pump(app_id, proc.stdout, LogStream.STDOUT)),
            asyncio.create_task(self._pump(app_id, proc.stderr, LogStream.STDERR)),
        ]
        try:
            code = await proc.wait()
            await asyncio.wait(pumps, timeout=PIPE_DRAIN_SECONDS)
        finally:
            for pump in pumps:
                pump.cancel()
        return code

    async def _watch(self, managed: ManagedProcess) -> None:
        app_id = managed.app_id
        code = await self._drain(app_id, managed.process)

        if self._processes.get(app_id) is managed:
            del self._processes[app_id]

        reason = exit_reason(code)
        self.log.info(f"App {app_id}: PID {managed.pid} {reason.lower()}")
        if managed.stopping:
            # stop() reports the final status
            self.events.system(app_id, reason)
            return
        self.events.status(app_id, classify_exit(code))
        self.events.system(app_id, reason)

    async def _detect_port(self, managed: ManagedProcess) -> None:
        await asyncio.sleep(self.port_check_delay)
        if self._processes.get(managed.app_id) is not managed:
            return
        detected = await asyncio.to_thread(listening_port_for_pid, managed.pid)
        if detected:
            self.events.emit(events.port(managed.app_id, detected))
            self.events.system(managed.app_id, f"Detected port {detected}")

    # -- Stop --

    async def _stop_locked(self, app: AppConfig) -> None:
        managed = self._processes.get(app.id)
        if managed is None:
            await self._stop_unmanaged(app)
        else:
            await self._stop_managed(managed)
        self.events.status(app.id, ProcessStatus.STOPPED)

    async def _wait_exit(self, managed: ManagedProcess, timeout: float) -> bool:
        if managed.watcher is None:
            return managed.process.returncode is not None
        done, _ = await asyncio.wait({managed.watcher}, timeout=timeout)
        return bool(done)

    async def _stop_managed(self, managed: ManagedProcess) -> None:
        app_id = managed.app_id
        managed.stopping = True
        self.events.system(app_id, "Stopping...")

        kill_process_group(managed.pid, signal.SIGTERM)
        if not await self._wait_exit(managed, self.stop_grace):
            kill_process_group(managed.pid, signal.SIGKILL)
            self.events.system(app_id, "Force killed (SIGKILL)")
            self.log.warning(f"App {app_id}: PID {managed.pid} ignored SIGTERM, killed")
            await self._wait_exit(managed, KILL_CONFIRM_SECONDS)

        if self._processes.get(app_id) is managed:
            del self._processes[app_id]

    async def _stop_unmanaged(self, app: AppConfig) -> None:
        """Stop whatever is listening on the app's port (e.g. left by a previous agent)."""
        if not app.port:
            return
        pids = await asyncio.to_thread(pids_on_port, app.port)
        if not pids:
            return

        self.events.system(app.id, f"Stopping PID(s) {', '.join(str(p) for p in pids)}...")
        for pid in pids:
            kill_process_group(pid, signal.SIGTERM)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stop_grace
        remaining = pids
        while remaining and loop.time() < deadline:
            await asyncio.sleep(UNMANAGED_POLL_SECONDS)
            remaining = await asyncio.to_thread(pids_on_port, app.port)

        if remaining:
            for pid in remaining:
                kill_process_group(pid, signal.SIGKILL)
            self.events.system(app.id, "Force killed (SIGKILL)")

    # -- One-shot jobs --

    async def _run_job(self, app_id: int, command: str, cwd: str) -> int:
        """Run a foreground job in the project directory, streaming output."""
        self.events.system(app_id, f"Running: {command}")
        try:
            proc = await asyncio.create_subprocess_exec(
                SHELL, "-c", command,
                cwd=cwd,
                env=dict(os.environ),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=PIPE_LIMIT,
            )
        except OSError as e:
            self.events.system(app_id, f"Error: {e}")
            return 1

        code = await self._drain(app_id, proc)
        self.events.system(app_id, f"Exited with code {code}")
        return code
