"""Async supervisor for long-running agent processes."""

from __future__ import annotations

import asyncio
import codecs
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Awaitable, Callable, Mapping, Protocol, Sequence

from .utils import sanitize_environment

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, str], Awaitable[None]]
ExitCallback = Callable[[str, int], Awaitable[None]]


class LaunchError(RuntimeError):
    """Raised when an agent process cannot be spawned."""


@dataclass(slots=True)
class ProcessHandle:
    """Bookkeeping for one launched process."""

    session_id: str
    pid: int | None
    log_path: Path
    process: asyncio.subprocess.Process | None = None
    reader: asyncio.Task | None = field(default=None, repr=False)
    log_file: IO[bytes] | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


class Supervisor(Protocol):
    """The subset of supervisor behaviour the orchestrator relies on."""

    async def launch(
        self,
        session_id: str,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Mapping[str, str] | None,
        log_path: Path,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        ...

    def stop(self, session_id: str) -> bool:
        ...

    def is_alive(self, session_id: str) -> bool:
        ...

    def pid_of(self, session_id: str) -> int | None:
        ...


def _prepare_log(log_path: Path) -> IO[bytes]:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_bytes(b"")
    return log_path.open("ab")


class ProcessSupervisor:
    """Launch agent processes and stream their combined output.

    Each process gets a reader task that appends output to the session log as it
    arrives, forwards decoded chunks to ``on_output`` and finally reports the exit
    code to ``on_exit`` exactly once. The handle is unregistered before the exit
    callback runs.
    """

    def __init__(self, *, stop_grace_seconds: float = 5.0, chunk_size: int = 4096) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        self._stop_grace_seconds = stop_grace_seconds
        self._chunk_size = chunk_size
        self._background: set[asyncio.Task] = set()

    @property
    def session_ids(self) -> list[str]:
        return list(self._handles)

    async def launch(
        self,
        session_id: str,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Mapping[str, str] | None,
        log_path: Path,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        if session_id in self._handles:
            raise LaunchError(f"Session '{session_id}' already has a live process")
        if not argv:
            raise LaunchError("Agent command is empty after rendering")

        log_path = Path(log_path)
        try:
            log_file = _prepare_log(log_path)
        except OSError as exc:
            raise LaunchError(f"Cannot create log file {log_path}: {exc}") from exc

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=sanitize_environment(env),
            )
        except (OSError, ValueError) as exc:
            log_file.close()
            raise LaunchError(f"Failed to start '{argv[0]}': {exc}") from exc

        handle = ProcessHandle(
            session_id=session_id,
            pid=process.pid,
            log_path=log_path,
            process=process,
            log_file=log_file,
        )
        self._handles[session_id] = handle
        handle.reader = asyncio.create_task(self._pump(handle, on_output, on_exit))
        self._background.add(handle.reader)
        handle.reader.add_done_callback(self._background.discard)
        logger.info(
            "Launched agent process",
            extra={"session_id": session_id, "pid": process.pid, "argv0": argv[0]},
        )
        return handle

    def stop(self, session_id: str) -> bool:
        """Request termination of a session's process.

        Returns ``False`` when no live process is registered. The exit callback
        still fires once the process is reaped.
        """

        handle = self._handles.pop(session_id, None)
        if handle is None or handle.process is None:
            return False
        process = handle.process
        if process.returncode is not None:
            return False
        with suppress(ProcessLookupError):
            process.terminate()
        escalation = asyncio.create_task(self._escalate(session_id, process))
        self._background.add(escalation)
        escalation.add_done_callback(self._background.discard)
        logger.info("Stop requested", extra={"session_id": session_id, "pid": process.pid})
        return True

    def is_alive(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        return handle is not None and handle.alive

    def pid_of(self, session_id: str) -> int | None:
        handle = self._handles.get(session_id)
        return handle.pid if handle is not None else None

    async def drain(self) -> None:
        """Wait for every reader and escalation task currently in flight."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _escalate(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Process ignored SIGTERM; killing",
                extra={"session_id": session_id, "pid": process.pid},
            )
            with suppress(ProcessLookupError):
                process.kill()

    def _write_log(self, handle: ProcessHandle, chunk: bytes) -> None:
        if handle.log_file is None:
            return
        try:
            handle.log_file.write(chunk)
            handle.log_file.flush()
        except OSError as exc:
            logger.warning(
                "Failed to append session log",
                extra={"session_id": handle.session_id, "log_path": str(handle.log_path), "error": str(exc)},
            )

    async def _deliver(self, on_output: OutputCallback, session_id: str, text: str) -> None:
        try:
            await on_output(session_id, text)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Output callback failed", extra={"session_id": session_id})

    async def _pump(
        self,
        handle: ProcessHandle,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        process = handle.process
        assert process is not None and process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await process.stdout.read(self._chunk_size)
                if not chunk:
                    break
                self._write_log(handle, chunk)
                text = decoder.decode(chunk)
                if text:
                    await self._deliver(on_output, handle.session_id, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                await self._deliver(on_output, handle.session_id, tail)
            returncode = await process.wait()
        finally:
            if handle.log_file is not None:
                with suppress(OSError):
                    handle.log_file.close()
                handle.log_file = None

        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]
        logger.info(
            "Agent process exited",
            extra={"session_id": handle.session_id, "pid": handle.pid, "returncode": returncode},
        )
        try:
            await on_exit(handle.session_id, returncode)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Exit callback failed", extra={"session_id": handle.session_id})


@dataclass(slots=True)
class LaunchRecord:
    session_id: str
    argv: tuple[str, ...]
    cwd: str
    env: dict[str, str]
    log_path: Path


class FakeProcessSupervisor:
    """Test double that lets callers drive output and exits by hand."""

    def __init__(self) -> None:
        self.launches: list[LaunchRecord] = []
        self.stopped: list[str] = []
        self._callbacks: dict[str, tuple[OutputCallback, ExitCallback, Path]] = {}
        self._alive: set[str] = set()
        self._failures: list[str] = []
        self._pids: dict[str, int] = {}
        self._next_pid = 4000

    def fail_next_launch(self, message: str = "spawn failed") -> None:
        self._failures.append(message)

    async def launch(
        self,
        session_id: str,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Mapping[str, str] | None,
        log_path: Path,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> ProcessHandle:
        if self._failures:
            raise LaunchError(self._failures.pop(0))
        log_path = Path(log_path)
        _prepare_log(log_path).close()
        self._next_pid += 1
        self.launches.append(
            LaunchRecord(
                session_id=session_id,
                argv=tuple(argv),
                cwd=cwd,
                env=dict(env or {}),
                log_path=log_path,
            )
        )
        self._callbacks[session_id] = (on_output, on_exit, log_path)
        self._alive.add(session_id)
        self._pids[session_id] = self._next_pid
        return ProcessHandle(session_id=session_id, pid=self._next_pid, log_path=log_path)

    def stop(self, session_id: str) -> bool:
        self.stopped.append(session_id)
        if session_id not in self._alive:
            return False
        self._alive.discard(session_id)
        return True

    def is_alive(self, session_id: str) -> bool:
        return session_id in self._alive

    def pid_of(self, session_id: str) -> int | None:
        if session_id not in self._alive:
            return None
        return self._pids.get(session_id)

    async def emit(self, session_id: str, text: str) -> None:
        on_output, _, log_path = self._callbacks[session_id]
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(text)
        await on_output(session_id, text)

    async def finish(self, session_id: str, exit_code: int = 0) -> None:
        _, on_exit, _ = self._callbacks.pop(session_id)
        self._alive.discard(session_id)
        await on_exit(session_id, exit_code)


__all__ = [
    "ExitCallback",
    "FakeProcessSupervisor",
    "LaunchError",
    "LaunchRecord",
    "OutputCallback",
    "ProcessHandle",
    "ProcessSupervisor",
    "Supervisor",
]
