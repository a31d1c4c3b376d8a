"""
Update server supervisor.

Runs the HTTP file server that exposes the update repository to the client.
The server is a background process; start() returns as soon as it has been
spawned and wait_until_ready() probes it over HTTP with exponential backoff
until it answers or the deadline passes. stop() terminates the process and
any children it spawned, and is idempotent so every exit path may call it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import httpx
import psutil

from update_cycle.errors import ExternalProcessError, FailedPreconditionError
from update_cycle.logging import get_logger
from update_cycle.process import render_command, start_background

if TYPE_CHECKING:
    from update_cycle.config import AppConfig

logger = get_logger(__name__)


class UpdateServer:
    """
    Supervises the background file server rooted at the repository.

    Attributes:
        config: The application configuration.
        start_count: Number of successful start() calls.
        stop_count: Number of stop() calls that stopped a running server.
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._started_at = 0.0
        self.start_count = 0
        self.stop_count = 0

    @property
    def url(self) -> str:
        """Base URL the server answers on."""
        return self.config.server.url

    @property
    def pid(self) -> int | None:
        """PID of the running server, if any."""
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        """True while a started server has not been stopped or exited."""
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """
        Spawn the file server in the background.

        Raises:
            FailedPreconditionError: If the server is already running or the
                repository directory does not exist.
            ExternalProcessError: If the server cannot be started.
        """
        if self._process is not None:
            raise FailedPreconditionError(
                "Update server is already running",
                details={"pid": self._process.pid},
            )

        repository_dir = self.config.repository_dir
        if not repository_dir.is_dir():
            raise FailedPreconditionError(
                f"Repository directory not found: {repository_dir}",
                details={"repository_dir": str(repository_dir)},
            )

        server = self.config.server
        args = render_command(
            self.config.tools.file_server,
            host=server.host,
            port=server.port,
            repository_dir=repository_dir,
            app_name=self.config.app_name,
        )
        self._process = await start_background(
            args, stage="SERVER_START", cwd=self.config.project_dir
        )
        self._started_at = asyncio.get_running_loop().time()
        self.start_count += 1
        logger.info(
            f"Update server started at {self.url}",
            extra={"pid": self._process.pid, "repository_dir": str(repository_dir)},
        )

    async def wait_until_ready(self) -> int:
        """
        Probe the server until it answers an HTTP request.

        An answer only counts once the spawned process has stayed up for
        `startup_grace_seconds`: if another program already holds the port,
        the probe is answered by it while our server dies on the bind.

        Returns:
            Number of probes it took.

        Raises:
            ExternalProcessError: If the server exits or does not answer
                before the deadline.
        """
        if self._process is None:
            raise FailedPreconditionError("Update server has not been started")

        server = self.config.server
        loop = asyncio.get_running_loop()
        deadline = loop.time() + server.ready_timeout_seconds
        delay = server.probe_initial_delay_seconds
        attempts = 0

        async with httpx.AsyncClient() as client:
            while True:
                self._raise_if_exited()

                attempts += 1
                remaining = deadline - loop.time()
                try:
                    response = await client.get(self.url, timeout=max(min(remaining, 2.0), 0.1))
                except httpx.TransportError as e:
                    logger.debug(
                        f"Update server not ready yet: {e!r}",
                        extra={"attempt": attempts},
                    )
                else:
                    settle = self._started_at + server.startup_grace_seconds - loop.time()
                    if settle > 0:
                        await asyncio.sleep(settle)
                    self._raise_if_exited(
                        hint=f"{self.url} answered, but not from the started server"
                    )
                    logger.info(
                        f"Update server ready after {attempts} probe(s)",
                        extra={"status_code": response.status_code},
                    )
                    return attempts

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ExternalProcessError(
                        f"[SERVER_START] Update server not ready after "
                        f"{server.ready_timeout_seconds}s",
                        details={"stage": "SERVER_START", "url": self.url, "attempts": attempts},
                    )
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * 2, server.probe_max_delay_seconds)

    def _raise_if_exited(self, hint: str | None = None) -> None:
        process = self._process
        if process is None or process.returncode is None:
            return
        details = {"stage": "SERVER_START", "url": self.url}
        if hint:
            details["hint"] = hint
        raise ExternalProcessError(
            "[SERVER_START] Update server exited during startup",
            returncode=process.returncode,
            details=details,
        )

    async def stop(self) -> bool:
        """
        Terminate the server and its children.

        Returns:
            True if a running server was stopped, False if there was nothing
            to stop.
        """
        process = self._process
        if process is None:
            return False
        self._process = None

        if process.returncode is not None:
            logger.warning(
                f"Update server had already exited with status {process.returncode}"
            )
            return False

        timeout = self.config.server.stop_timeout_seconds
        children = _child_processes(process.pid)
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass
        try:
            process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("Update server did not terminate, killing it")
            process.kill()
            await process.wait()

        if children:
            _, alive = await asyncio.to_thread(psutil.wait_procs, children, timeout)
            for child in alive:
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass

        self.stop_count += 1
        logger.info("Update server stopped", extra={"pid": process.pid})
        return True

    @asynccontextmanager
    async def running(self) -> AsyncIterator[UpdateServer]:
        """
        Start the server, wait for it, and stop it on every exit path.

        For serving a repository outside UpdateCyclePipeline, whose
        SERVER_START and SERVER_STOP are separate stages and which stops
        the server again in its finally block.
        """
        await self.start()
        try:
            await self.wait_until_ready()
            yield self
        finally:
            await self.stop()


def _child_processes(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []
