"""Tests for src.conformance.process -- supervised server processes.

These start real child processes (small Python scripts) on free local
ports; no generated project or Node toolchain is needed.
"""

from __future__ import annotations

import asyncio
import os
import socket
import sys
import textwrap
import time
from pathlib import Path

import pytest

from src.conformance.exceptions import ServerStartupError
from src.conformance.process import ProcessState, ProcessSupervisor, child_environment

pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="process-group signalling is POSIX only"
)


# Outlives its parent unless the whole process group is killed.
GRANDCHILD = (
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
)

LISTENER = f"GRANDCHILD = {GRANDCHILD!r}\n" + textwrap.dedent(
    """
    import os, signal, socket, subprocess, sys
    if "--ignore-term" in sys.argv:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if "--spawn-child" in sys.argv:
        child = subprocess.Popen(
            [sys.executable, "-c", GRANDCHILD],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        with open("child.pid", "w") as fh:
            fh.write(str(child.pid))
    port = int(os.environ["PORT"])
    server = socket.socket()
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", port))
    server.listen()
    print("listening on", port, flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()
    """
)

CRASHER = textwrap.dedent(
    """
    import sys
    print("boom: missing module", flush=True)
    sys.exit(3)
    """
)

SLEEPER = textwrap.dedent(
    """
    import time
    time.sleep(60)
    """
)


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _is_running(pid: int) -> bool:
    """True while *pid* exists and is not a zombie awaiting its reaper."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.fixture
def scripts(tmp_path: Path) -> Path:
    for name, body in (("listener.py", LISTENER), ("crasher.py", CRASHER), ("sleeper.py", SLEEPER)):
        (tmp_path / name).write_text(body, encoding="utf-8")
    return tmp_path


@pytest.fixture
def supervisor(harness_config) -> ProcessSupervisor:
    return ProcessSupervisor(harness_config)


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_marks_ready(self, supervisor, scripts):
        port = _free_port()
        process = await supervisor.start(scripts, "listener.py", port)
        try:
            assert process.state == ProcessState.READY.value
            assert process.port == port
            assert process.returncode is None
            assert supervisor.live_ports == {port}
        finally:
            await supervisor.stop(process)

        assert process.state == ProcessState.STOPPED.value
        assert process.returncode is not None
        assert process.history == ["starting", "ready", "stopped"]
        assert supervisor.live_ports == set()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, supervisor, scripts):
        process = await supervisor.start(scripts, "listener.py", _free_port())
        await supervisor.stop(process)
        await supervisor.stop(process)
        assert process.history == ["starting", "ready", "stopped"]

    @pytest.mark.asyncio
    async def test_captures_output(self, supervisor, scripts):
        process = await supervisor.start(scripts, "listener.py", _free_port())
        await supervisor.stop(process)
        assert "listening on" in process.output_tail()

    @pytest.mark.asyncio
    async def test_port_already_live_is_rejected(self, supervisor, scripts):
        port = _free_port()
        process = await supervisor.start(scripts, "listener.py", port)
        try:
            with pytest.raises(ValueError, match=str(port)):
                await supervisor.start(scripts, "listener.py", port)
        finally:
            await supervisor.stop(process)

    @pytest.mark.asyncio
    async def test_sigterm_ignored_then_killed(self, harness_config, scripts):
        harness_config.stop_grace_s = 0.3
        harness_config.launch_command = [sys.executable, "{entrypoint}", "--ignore-term"]
        supervisor = ProcessSupervisor(harness_config)
        process = await supervisor.start(scripts, "listener.py", _free_port())
        await supervisor.stop(process)
        assert process.state == ProcessState.STOPPED.value
        assert process.returncode is not None

    @pytest.mark.asyncio
    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads /proc")
    async def test_stop_kills_processes_left_in_the_group(self, harness_config, scripts):
        harness_config.launch_command = [sys.executable, "{entrypoint}", "--spawn-child"]
        supervisor = ProcessSupervisor(harness_config)
        process = await supervisor.start(scripts, "listener.py", _free_port())
        child_pid = int((scripts / "child.pid").read_text())
        assert _is_running(child_pid)

        await supervisor.stop(process)

        deadline = time.monotonic() + 2.0
        while _is_running(child_pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        assert not _is_running(child_pid)

    @pytest.mark.asyncio
    async def test_stop_all(self, supervisor, scripts):
        await supervisor.start(scripts, "listener.py", _free_port())
        await supervisor.start(scripts, "listener.py", _free_port())
        assert len(supervisor.live_ports) == 2
        await supervisor.stop_all()
        assert supervisor.live_ports == set()


class TestStartupFailures:
    @pytest.mark.asyncio
    async def test_early_exit_fails_fast_with_output(self, supervisor, scripts):
        with pytest.raises(ServerStartupError) as exc_info:
            await supervisor.start(scripts, "crasher.py", _free_port())
        error = exc_info.value
        assert error.entrypoint == "crasher.py"
        assert "exited with code 3" in str(error)
        assert "boom: missing module" in error.output
        assert supervisor.live_ports == set()

    @pytest.mark.asyncio
    async def test_timeout_kills_and_reports_elapsed(self, harness_config, scripts):
        harness_config.startup_timeout_s = 0.5
        supervisor = ProcessSupervisor(harness_config)
        port = _free_port()
        with pytest.raises(ServerStartupError) as exc_info:
            await supervisor.start(scripts, "sleeper.py", port)
        error = exc_info.value
        assert error.port == port
        assert error.elapsed_s <= 5.0
        assert "sleeper.py" in str(error)
        assert supervisor.live_ports == set()

    @pytest.mark.asyncio
    async def test_missing_launcher(self, harness_config, scripts):
        harness_config.launch_command = [str(scripts / "no-such-runtime"), "{entrypoint}"]
        supervisor = ProcessSupervisor(harness_config)
        port = _free_port()
        with pytest.raises(ServerStartupError, match="could not be launched") as exc_info:
            await supervisor.start(scripts, "listener.py", port)
        assert exc_info.value.port == port
        assert supervisor.live_ports == set()

    @pytest.mark.asyncio
    async def test_unknown_launch_placeholder(self, harness_config, scripts):
        harness_config.launch_command = [sys.executable, "{entry}"]
        supervisor = ProcessSupervisor(harness_config)
        with pytest.raises(ServerStartupError, match="invalid launch command"):
            await supervisor.start(scripts, "listener.py", _free_port())
        assert supervisor.live_ports == set()


class TestManagedScope:
    @pytest.mark.asyncio
    async def test_stops_on_success(self, supervisor, scripts):
        async with supervisor.managed(scripts, "listener.py", _free_port()) as process:
            assert process.state == "ready"
        assert process.state == "stopped"

    @pytest.mark.asyncio
    async def test_stops_when_body_raises(self, supervisor, scripts):
        holder = {}
        with pytest.raises(AssertionError):
            async with supervisor.managed(scripts, "listener.py", _free_port()) as process:
                holder["process"] = process
                raise AssertionError("check failed")
        assert holder["process"].state == "stopped"
        assert holder["process"].returncode is not None
        assert supervisor.live_ports == set()


class TestChildEnvironment:
    def test_strips_secrets_and_sets_port(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
        monkeypatch.setenv("TEST_PAYER_PRIVATE_KEY", "0xdead")
        monkeypatch.setenv("HARMLESS", "1")
        env = child_environment(30123)
        assert env["PORT"] == "30123"
        assert env["HARMLESS"] == "1"
        assert "OPENAI_API_KEY" not in env
        assert "TEST_PAYER_PRIVATE_KEY" not in env

    def test_port_optional(self, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        assert "PORT" not in child_environment()

    def test_build_command(self, supervisor):
        argv = supervisor.build_command(Path("/p"), "listener.py", 30001)
        assert argv == [sys.executable, "listener.py"]
