"""Supervise one external download-tool process."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from ..errors import ProcessLaunchFailed

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"


@dataclass(frozen=True)
class ExitStatus:
    """How a process ended: ``killed`` by us, or with an exit ``code``."""

    code: Optional[int]
    killed: bool = False

    @property
    def success(self) -> bool:
        return not self.killed and self.code == 0

    def __str__(self) -> str:
        if self.killed:
            return "killed"
        return f"exit code {self.code}"


class ProcessHandle:
    """A running process with merged stdout/stderr.

    Use as an async context manager: leaving the block kills a process that
    is still alive and reaps it, so no zombie or open pipe outlives the handle.
    """

    def __init__(self, proc: asyncio.subprocess.Process, kill_grace: float) -> None:
        self._proc = proc
        self._kill_grace = kill_grace
        self._killed = False
        self._status: Optional[ExitStatus] = None
        self._kill_lock = asyncio.Lock()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.returncode is None

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded output lines as they arrive, until EOF."""
        stream = self._proc.stdout
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> ExitStatus:
        """Reap the process (once) and return its status."""
        if self._status is None:
            code = await self._proc.wait()
            if self._status is None:
                self._status = ExitStatus(code=code, killed=self._killed)
        return self._status

    async def kill(self) -> None:
        """Terminate the process group, escalating to SIGKILL after the grace period.

        Safe to call repeatedly and after natural exit; once the tool itself
        has exited, descendants left in its session are killed outright.
        """
        async with self._kill_lock:
            if self._proc.returncode is not None:
                if _POSIX:
                    self._signal(signal.SIGKILL)
                return
            self._killed = True
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self._kill_grace)
                return
            except asyncio.TimeoutError:
                logger.warning("pid %s ignored SIGTERM for %.1fs; sending SIGKILL", self.pid, self._kill_grace)
            self._signal(signal.SIGKILL if _POSIX else signal.SIGTERM)
            await self._proc.wait()

    def _signal(self, sig: int) -> None:
        try:
            if _POSIX:
                # The tool runs in its own session, so its children die with it.
                os.killpg(self._proc.pid, sig)
            elif sig == signal.SIGTERM:
                self._proc.terminate()
            else:
                self._proc.kill()
        except (ProcessLookupError, PermissionError):
            # Group already gone, or its id now belongs to someone else.
            pass

    async def close(self) -> None:
        """Kill whatever is left of the process group, reap it and release the pipes."""
        await self.kill()
        await self.wait()
        # asyncio has no public close for a subprocess transport.
        transport = getattr(self._proc, "_transport", None)
        if transport is not None:
            transport.close()

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class ProcessRunner:
    """Starts download-tool processes with merged, line-buffered output."""

    def __init__(self, kill_grace: float = 5.0, line_limit: int = 1024 * 1024) -> None:
        self.kill_grace = kill_grace
        self.line_limit = line_limit

    async def start(
        self,
        command: str,
        args: Sequence[str],
        work_dir: Path,
        env: Optional[dict] = None,
    ) -> ProcessHandle:
        """Spawn *command* with *args* in *work_dir*.

        Raises
        ------
        ProcessLaunchFailed
            If the executable is missing, not executable, or the work dir is unusable.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(work_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=self.line_limit,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            raise ProcessLaunchFailed(f"could not start {command!r}: {exc}") from exc
        logger.debug("Started %s (pid %s) in %s", command, proc.pid, work_dir)
        return ProcessHandle(proc, self.kill_grace)
