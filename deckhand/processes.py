"""Supervision of long-running background OS processes."""

import asyncio
import os
import signal
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from deckhand.logging import get_logger

log = get_logger(__name__)

DEFAULT_STOP_GRACE_PERIOD = 5.0
_FINISHED_HISTORY_LIMIT = 64


class ProcessStatus(str, Enum):
    """Aggregate state of the supervised process set."""

    IDLE = "idle"
    RUNNING = "running"


@dataclass
class BackgroundProcessHandle:
    """Tracks one spawned process independently of the action that started it."""

    process_id: str
    os_pid: int | None
    command: str
    working_dir: str
    process: Any = field(repr=False, compare=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    exit_code: int | None = None

    @property
    def is_running(self) -> bool:
        return self.exit_code is None

    def describe(self) -> str:
        return f"Process ID: {self.process_id}, PID: {self.os_pid}, Command: {self.command}"


def _send_signal(process: Any, sig: int) -> None:
    """Signal the process group when the child leads one, else the child."""
    pid = getattr(process, "pid", None)
    if pid is not None and hasattr(os, "killpg"):
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
                return
        except ProcessLookupError:
            return
        except OSError:
            pass
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        pass


_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class BackgroundProcessSupervisor:
    """Owns the set of active background processes.

    One monitor task per process awaits its exit, records the exit code and
    removes it from the active set. Nothing else writes ``exit_code``.
    """

    def __init__(self, stop_grace_period: float = DEFAULT_STOP_GRACE_PERIOD):
        self.stop_grace_period = stop_grace_period
        self._active: dict[str, BackgroundProcessHandle] = {}
        self._finished: dict[str, BackgroundProcessHandle] = {}
        self._monitors: dict[str, asyncio.Task[None]] = {}

    @property
    def active(self) -> list[BackgroundProcessHandle]:
        return list(self._active.values())

    def has_active(self) -> bool:
        self._reap_exited()
        return bool(self._active)

    def get(self, process_id: str) -> BackgroundProcessHandle | None:
        return self._active.get(process_id) or self._finished.get(process_id)

    def register(self, process: Any, command: str, working_dir: str) -> str:
        """Start tracking ``process`` and return its supervisor id."""
        process_id = uuid.uuid4().hex
        handle = BackgroundProcessHandle(
            process_id=process_id,
            os_pid=getattr(process, "pid", None),
            command=command,
            working_dir=str(working_dir),
            process=process,
        )
        self._active[process_id] = handle
        self._monitors[process_id] = asyncio.create_task(self._monitor(handle))
        log.info(
            "Registered background process",
            process_id=process_id,
            pid=handle.os_pid,
            command=command,
        )
        return process_id

    def _remember_finished(self, handle: BackgroundProcessHandle) -> None:
        self._finished[handle.process_id] = handle
        while len(self._finished) > _FINISHED_HISTORY_LIMIT:
            self._finished.pop(next(iter(self._finished)))

    async def _monitor(self, handle: BackgroundProcessHandle) -> None:
        try:
            code = await handle.process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Background process monitor failed", process_id=handle.process_id, error=str(e))
            self._monitors.pop(handle.process_id, None)
            return

        handle.exit_code = code
        self._active.pop(handle.process_id, None)
        self._monitors.pop(handle.process_id, None)
        self._remember_finished(handle)
        log.info(
            "Background process exited",
            process_id=handle.process_id,
            pid=handle.os_pid,
            command=handle.command,
            exit_code=code,
        )

    def _reap_exited(self) -> None:
        """Drop processes that already exited but whose monitor has not run yet."""
        for process_id, handle in list(self._active.items()):
            if getattr(handle.process, "returncode", None) is not None:
                self._active.pop(process_id, None)
                self._remember_finished(handle)

    def list(self) -> tuple[ProcessStatus, str]:
        """Report the active process set."""
        self._reap_exited()
        if not self._active:
            return ProcessStatus.IDLE, "No background processes are running."
        lines = [handle.describe() for handle in self._active.values()]
        return (
            ProcessStatus.RUNNING,
            f"{len(lines)} background process(es) running:\n" + "\n".join(lines),
        )

    def summary(self) -> str:
        """Advisory status text, empty when nothing is running."""
        status, text = self.list()
        return text if status is ProcessStatus.RUNNING else ""

    async def _await_monitor(self, process_id: str, timeout: float = 1.0) -> None:
        monitor = self._monitors.get(process_id)
        if monitor is not None and not monitor.done():
            await asyncio.wait({monitor}, timeout=timeout)

    async def stop(self, process_id: str, force: bool = False) -> str:
        """Terminate a process, escalating to a kill after the grace window."""
        handle = self._active.get(process_id)
        if handle is None:
            finished = self._finished.get(process_id)
            if finished is not None:
                code = finished.exit_code
                if code is None:
                    code = getattr(finished.process, "returncode", None)
                return f"Process already finished (exit code: {code})\nCommand: {finished.command}"
            return f"Process not found: {process_id}"

        process = handle.process
        if process.returncode is not None:
            await self._await_monitor(process_id)
            self._reap_exited()
            return f"Process already finished (exit code: {process.returncode})\nCommand: {handle.command}"

        escalated = False
        if force:
            _send_signal(process, _KILL_SIGNAL)
            log.info("Killing background process", process_id=process_id, pid=handle.os_pid)
            await process.wait()
        else:
            _send_signal(process, signal.SIGTERM)
            log.info("Terminating background process", process_id=process_id, pid=handle.os_pid)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace_period)
            except asyncio.TimeoutError:
                escalated = True
                log.warning(
                    "Background process ignored terminate signal, killing",
                    process_id=process_id,
                    pid=handle.os_pid,
                    grace_period=self.stop_grace_period,
                )
                _send_signal(process, _KILL_SIGNAL)
                await process.wait()

        await self._await_monitor(process_id)
        if self._active.pop(process_id, None) is not None:
            self._remember_finished(handle)

        lines = [
            "Background process stopped",
            f"Process ID: {process_id}",
            f"Command: {handle.command}",
            f"Exit code: {process.returncode}",
        ]
        if escalated:
            lines.append(
                f"Escalated to SIGKILL: no exit within {self.stop_grace_period:g}s of SIGTERM"
            )
        return "\n".join(lines)

    async def cleanup(self) -> str:
        """Stop every tracked process; failures become per-process diagnostics."""
        self._reap_exited()
        if not self._active:
            return "No background processes to clean up."

        process_ids = list(self._active.keys())
        reports: list[str] = []
        for process_id in process_ids:
            try:
                reports.append(await self.stop(process_id))
            except Exception as e:
                log.error("Failed to clean up background process", process_id=process_id, error=str(e))
                reports.append(f"Failed to clean up process {process_id}: {e}")

        return f"Cleaned up {len(process_ids)} background process(es):\n" + "\n---\n".join(reports)

    async def aclose(self) -> str:
        """Clean up processes and cancel leftover monitors."""
        report = await self.cleanup()
        monitors = list(self._monitors.values())
        for monitor in monitors:
            monitor.cancel()
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)
        self._monitors.clear()
        return report
