"""Process supervision for generated agent servers.

Starts a project's server entry point as a child process bound to an
allocated port, waits until the port accepts TCP connections, and
guarantees termination on teardown.

Lifecycle of a :class:`ManagedProcess` (``transitions`` state machine)::

    starting --mark_ready--> ready --mark_stopped--> stopped
        \\--mark_failed--> failed --mark_stopped--/
"""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import signal
import sys
import time
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

from transitions import Machine

from src.conformance.config import HarnessConfig
from src.conformance.constants import SECRET_ENV_KEYS
from src.conformance.exceptions import ServerStartupError
from src.conformance.retry import RetryExhausted, RetryPolicy, retry_async

logger = logging.getLogger(__name__)

_STREAM_LIMIT = 1 << 20
_CONNECT_TIMEOUT_S = 2.0


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


STATES: list[str] = [s.value for s in ProcessState]

TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "mark_ready", "source": "starting", "dest": "ready"},
    {"trigger": "mark_failed", "source": "starting", "dest": "failed"},
    {"trigger": "mark_stopped", "source": ["starting", "ready", "failed"], "dest": "stopped"},
]


class _EarlyExit(Exception):
    def __init__(self, returncode: int) -> None:
        self.returncode = returncode
        super().__init__(f"exited with code {returncode}")


class ManagedProcess:
    """An OS process handle, its bound port, and its readiness state.

    Owned by exactly one scenario; must reach ``stopped`` before that
    scenario completes.
    """

    state: str

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        entrypoint: str,
        port: int,
        project_dir: Path,
        tail_lines: int = 200,
    ) -> None:
        self.process = process
        self.entrypoint = entrypoint
        self.port = port
        self.project_dir = project_dir
        self.started_at = time.monotonic()
        self.history: list[str] = [ProcessState.STARTING.value]
        self._output: collections.deque[str] = collections.deque(maxlen=tail_lines)
        self._drains: list[asyncio.Task[None]] = []

        Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=ProcessState.STARTING.value,
            auto_transitions=False,
            after_state_change="_record_state",
        )

        for label, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is not None:
                self._drains.append(asyncio.create_task(self._drain(label, stream)))

    def _record_state(self) -> None:
        self.history.append(self.state)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def elapsed_s(self) -> float:
        return time.monotonic() - self.started_at

    def output_tail(self) -> str:
        """Return the most recent captured stdout/stderr lines."""
        return "\n".join(self._output)

    async def _drain(self, label: str, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; skip what is buffered.
                self._output.append(f"[{label}] <line truncated>")
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            self._output.append(f"[{label}] {text}")
            logger.debug("%s[%d] %s: %s", self.entrypoint, self.port, label, text)

    async def close_output(self) -> None:
        """Wait for the output readers to hit EOF after the process exited."""
        if not self._drains:
            return
        _, pending = await asyncio.wait(self._drains, timeout=1.0)
        for task in pending:
            task.cancel()
        self._drains = []

    def __repr__(self) -> str:
        return (
            f"ManagedProcess(entrypoint={self.entrypoint!r}, port={self.port}, "
            f"pid={self.pid}, state={self.state!r})"
        )


def child_environment(port: int | None = None) -> dict[str, str]:
    """Return ``os.environ`` minus secret keys, with ``PORT`` set when given."""
    env = {k: v for k, v in os.environ.items() if k not in SECRET_ENV_KEYS}
    if port is not None:
        env["PORT"] = str(port)
    return env


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the whole process group on POSIX so wrapper launchers take their children down."""
    if process.returncode is not None:
        return
    try:
        if sys.platform == "win32":
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        else:
            os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


def _kill_group(pgid: int) -> None:
    """SIGKILL every process remaining in group *pgid*; a no-op once the group is empty."""
    if sys.platform == "win32":
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        logger.warning("Not permitted to kill process group %d", pgid)
        return
    logger.debug("Killed leftover processes in group %d", pgid)


async def _tcp_connect(host: str, port: int) -> None:
    _, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=_CONNECT_TIMEOUT_S
    )
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _is_not_listening(exc: BaseException) -> bool:
    return isinstance(exc, (OSError, asyncio.TimeoutError))


class ProcessSupervisor:
    """Starts and stops generated-project servers.

    Usage::

        supervisor = ProcessSupervisor(config)
        async with supervisor.managed(project_dir, "src/a2a-server.ts", port) as proc:
            ...  # proc.state == "ready"
        # proc.state == "stopped", even if the block raised
    """

    def __init__(self, config: HarnessConfig | None = None, host: str = "localhost") -> None:
        self._config = config or HarnessConfig()
        self.host = host
        self._live: dict[int, ManagedProcess] = {}

    @property
    def live_ports(self) -> set[int]:
        """Ports held by processes that have not been stopped yet."""
        return set(self._live)

    def build_command(self, project_dir: Path, entrypoint: str, port: int) -> list[str]:
        """Expand the configured launch command template."""
        return self._config.launch_argv(entrypoint, project_dir, port)

    async def start(self, project_dir: Path | str, entrypoint: str, port: int) -> ManagedProcess:
        """Launch *entrypoint* from *project_dir* and wait until *port* accepts connections.

        Raises:
            ServerStartupError: If the launch command is invalid or could not
                be executed, the process exited early, or the port never
                opened within ``startup_timeout_s``. A spawned process is
                stopped before the error propagates.
            ValueError: If *port* is already held by a live process.
        """
        project_dir = Path(project_dir)
        if port in self._live:
            raise ValueError(f"Port {port} is already held by {self._live[port]!r}")

        try:
            cmd = self.build_command(project_dir, entrypoint, port)
        except ValueError as exc:
            raise ServerStartupError(
                entrypoint, 0.0, port, reason=f"has an invalid launch command ({exc})"
            ) from exc

        logger.info("Starting %s on port %d: %s", entrypoint, port, " ".join(cmd))
        spawned_at = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(project_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_environment(port),
                limit=_STREAM_LIMIT,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            raise ServerStartupError(
                entrypoint,
                time.monotonic() - spawned_at,
                port,
                reason=f"could not be launched with {cmd[0]!r} ({exc})",
            ) from exc
        managed = ManagedProcess(
            proc,
            entrypoint=entrypoint,
            port=port,
            project_dir=project_dir,
            tail_lines=self._config.output_tail_lines,
        )
        self._live[port] = managed

        try:
            await self._wait_until_ready(managed)
        except BaseException:
            managed.mark_failed()
            await self.stop(managed)
            raise

        managed.mark_ready()
        logger.info(
            "%s ready on port %d after %.1fs", entrypoint, port, managed.elapsed_s
        )
        return managed

    async def _wait_until_ready(self, managed: ManagedProcess) -> None:
        policy = RetryPolicy(
            max_attempts=None,
            delay_s=self._config.startup_poll_interval_s,
            deadline_s=self._config.startup_timeout_s,
        )

        async def _probe() -> None:
            if managed.returncode is not None:
                raise _EarlyExit(managed.returncode)
            await _tcp_connect(self.host, managed.port)

        try:
            await retry_async(_probe, policy, retry_on=_is_not_listening)
        except RetryExhausted as exc:
            raise ServerStartupError(
                managed.entrypoint,
                exc.elapsed_s,
                managed.port,
                output=managed.output_tail(),
            ) from exc
        except _EarlyExit as exc:
            # Give the readers a moment so the crash output is in the error.
            await managed.close_output()
            raise ServerStartupError(
                managed.entrypoint,
                managed.elapsed_s,
                managed.port,
                output=managed.output_tail(),
                reason=str(exc),
            ) from exc

    async def stop(self, managed: ManagedProcess) -> None:
        """Terminate *managed*; idempotent and safe on already-dead processes."""
        if managed.state == ProcessState.STOPPED.value:
            return

        proc = managed.process
        if proc.returncode is None:
            _send_signal(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_s)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s (pid %d) ignored SIGTERM for %.1fs; killing",
                    managed.entrypoint,
                    managed.pid,
                    self._config.stop_grace_s,
                )
                _send_signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                await proc.wait()
        else:
            await proc.wait()

        # The leader is gone; descendants left in its group may still hold the port.
        _kill_group(proc.pid)
        await managed.close_output()
        self._live.pop(managed.port, None)
        managed.mark_stopped()
        logger.info("Stopped %s on port %d (exit %s)", managed.entrypoint, managed.port, proc.returncode)

    async def stop_all(self) -> None:
        """Stop every process still live; used as a last-resort cleanup."""
        for managed in list(self._live.values()):
            await self.stop(managed)

    @asynccontextmanager
    async def managed(
        self, project_dir: Path | str, entrypoint: str, port: int
    ) -> AsyncIterator[ManagedProcess]:
        """Scoped acquisition: the process is stopped on every exit path."""
        process = await self.start(project_dir, entrypoint, port)
        try:
            yield process
        finally:
            await self.stop(process)
