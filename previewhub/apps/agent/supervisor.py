from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import time
from typing import Awaitable, Callable, Mapping, Protocol

import httpx

from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_RESTARTING = "restarting"
STATUS_FAILED = "failed"
STATUS_STOPPED = "stopped"

_RESTART_WINDOW_S = 60.0


class ChildProcess(Protocol):
    returncode: int | None

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


ProcessFactory = Callable[[], Awaitable[ChildProcess]]


def child_env(port: int, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    env.update({"PORT": str(port), "HOST": "0.0.0.0", "BROWSER": "none"})
    if extra:
        env.update(extra)
    return env


async def run_command(command: str, *, cwd: Path, env: Mapping[str, str] | None = None) -> int:
    process = await asyncio.create_subprocess_shell(command, cwd=str(cwd), env=dict(env) if env else None)
    code = await process.wait()
    logger.info("agent_command_finished command=%s code=%s", command, code)
    return code


class DevServerSupervisor:
    """Keeps the project's dev server alive as a child process.

    An unexpected exit is followed by a restart after `restart_delay_s`, unless
    more than `max_restarts_per_minute` restarts already happened in the last
    minute; the supervisor then gives up and reports `failed`. Readiness is
    observed by polling the child's port over HTTP.
    """

    def __init__(
        self,
        command: str,
        *,
        cwd: Path,
        port: int,
        env: Mapping[str, str] | None = None,
        restart_delay_s: float = 2.0,
        max_restarts_per_minute: int = 5,
        probe_interval_s: float = 1.0,
        ready_timeout_s: float = 120.0,
        stop_timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
        spawn: ProcessFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.command = command
        self.port = port
        self._cwd = cwd
        self._env = child_env(port, env)
        self._restart_delay_s = restart_delay_s
        self._max_restarts = max_restarts_per_minute
        self._probe_interval_s = probe_interval_s
        self._ready_timeout_s = ready_timeout_s
        self._stop_timeout_s = stop_timeout_s
        self._client = client
        self._spawn_override = spawn
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._process: ChildProcess | None = None
        self._runner: asyncio.Task | None = None
        self._restart_times: list[float] = []
        self._restart_requested = False
        self._stopping = False
        self.status = STATUS_IDLE
        self.ready = False
        self.restarts = 0
        self.last_exit_code: int | None = None

    @property
    def probe_url(self) -> str:
        return f"http://127.0.0.1:{self.port}/"

    async def _spawn(self) -> ChildProcess:
        if self._spawn_override is not None:
            return await self._spawn_override()
        return await asyncio.create_subprocess_shell(self.command, cwd=str(self._cwd), env=self._env)

    def start(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        self._stopping = False
        self._runner = asyncio.create_task(self._run())

    async def _run_once(self) -> int | None:
        try:
            self._process = await self._spawn()
        except OSError as exc:
            logger.error("dev_server_spawn_failed command=%s error=%s", self.command, exc)
            return None
        self.status = STATUS_STARTING
        logger.info("dev_server_started command=%s port=%s", self.command, self.port)
        probe = asyncio.create_task(self._probe())
        try:
            return await self._process.wait()
        finally:
            probe.cancel()
            try:
                await probe
            except asyncio.CancelledError:
                pass
            self.ready = False
            self._process = None

    async def _run(self) -> None:
        while not self._stopping:
            code = await self._run_once()
            self.last_exit_code = code
            if self._stopping:
                break
            if self._restart_requested:
                # Requested restarts (dependency changes) do not count against the budget.
                self._restart_requested = False
                continue
            now = self._clock()
            self._restart_times = [ts for ts in self._restart_times if now - ts < _RESTART_WINDOW_S]
            if len(self._restart_times) >= self._max_restarts:
                self.status = STATUS_FAILED
                increment_counter("dev_server_failed_total")
                logger.error(
                    "dev_server_gave_up command=%s restarts=%s window_s=%s",
                    self.command,
                    len(self._restart_times),
                    int(_RESTART_WINDOW_S),
                )
                return
            self._restart_times.append(now)
            self.restarts += 1
            self.status = STATUS_RESTARTING
            increment_counter("dev_server_restarts_total")
            logger.warning("dev_server_exited code=%s restart_in_s=%s", code, self._restart_delay_s)
            await self._sleep(self._restart_delay_s)
        self.status = STATUS_STOPPED

    async def _probe(self) -> None:
        client = self._client or httpx.AsyncClient(timeout=2.0)
        deadline = self._clock() + self._ready_timeout_s
        try:
            while self._clock() < deadline:
                try:
                    response = await client.get(self.probe_url)
                except httpx.HTTPError:
                    response = None
                if response is not None and response.status_code < 500:
                    self.ready = True
                    self.status = STATUS_RUNNING
                    logger.info("dev_server_ready port=%s", self.port)
                    return
                await self._sleep(self._probe_interval_s)
            logger.warning("dev_server_not_ready port=%s timeout_s=%s", self.port, self._ready_timeout_s)
        finally:
            if self._client is None:
                await client.aclose()

    async def _terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("dev_server_kill command=%s", self.command)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def restart(self) -> None:
        if self._runner is None or self._runner.done():
            self.start()
            return
        if self._process is None:
            # Between runs; the loop spawns a fresh child anyway.
            return
        self._restart_requested = True
        logger.info("dev_server_restart_requested command=%s", self.command)
        await self._terminate()

    async def stop(self) -> None:
        self._stopping = True
        await self._terminate()
        runner = self._runner
        self._runner = None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self.ready = False
        self.status = STATUS_STOPPED
