"""Bounded-concurrency execution of action requests."""

import asyncio
import inspect
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from deckhand.actions import ActionRequest, ActionResult, ActionState, ToolMessage, with_note
from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.processes import BackgroundProcessSupervisor
from deckhand.tools.registry import ActionSpec

log = get_logger(__name__)

COMPLETION_ACKNOWLEDGEMENT = "The task has been completed."


class ActionSource(Protocol):
    """Registry interface the engine consults."""

    def has_action(self, name: str) -> bool: ...

    def resolve(self, name: str) -> ActionSpec: ...


@dataclass
class ActionContext:
    """Narrow capability handed to actions that manage background processes."""

    call_id: str
    working_dir: str
    _supervisor: BackgroundProcessSupervisor = field(repr=False)

    def register_background_process(self, process: Any, command: str, working_dir: str | None = None) -> str:
        return self._supervisor.register(process, command, working_dir or self.working_dir)

    def list_processes(self) -> str:
        _, text = self._supervisor.list()
        return text

    async def stop_process(self, process_id: str, force: bool = False) -> str:
        return await self._supervisor.stop(process_id, force=force)

    async def cleanup_processes(self) -> str:
        return await self._supervisor.cleanup()


@dataclass(frozen=True)
class Observation:
    """A finished result plus the content reported back to the model."""

    result: ActionResult
    content: str | ToolMessage

    @property
    def call_id(self) -> str:
        return self.result.call_id

    @property
    def request(self) -> ActionRequest:
        return self.result.request


class ExecutionEngine:
    """Run action requests with a bounded pool of permits.

    Every request is executed at most once. Failures of any kind are recorded
    on the request's ``ActionResult``; nothing raises out of the engine.
    """

    def __init__(
        self,
        registries: ActionSource | Sequence[ActionSource],
        pool_size: int | None = None,
        supervisor: BackgroundProcessSupervisor | None = None,
        completion_sentinel: str | None = None,
        grace_period: float | None = None,
        working_dir: Path | str | None = None,
    ):
        cfg = get_config()
        if isinstance(registries, Sequence):
            self.registries: list[ActionSource] = list(registries)
        else:
            self.registries = [registries]
        self.pool_size = max(1, int(pool_size or cfg.execution.pool_size))
        self.supervisor = supervisor or BackgroundProcessSupervisor(
            stop_grace_period=cfg.execution.stop_grace_period,
        )
        self.completion_sentinel = completion_sentinel or cfg.tools.completion_sentinel
        self.grace_period = cfg.execution.grace_period if grace_period is None else grace_period
        self.working_dir = str(Path(working_dir).expanduser().resolve() if working_dir else Path.cwd())

        self._semaphore = asyncio.Semaphore(self.pool_size)
        self._results: dict[str, ActionResult] = {}
        self._seen_call_ids: set[str] = set()
        self._pending: dict[str, ActionResult] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._observations: list[Observation] = []
        self._running = 0
        self.peak_running = 0

    async def __aenter__(self) -> "ExecutionEngine":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    @property
    def in_flight(self) -> int:
        """Number of started actions that have not finished yet."""
        return sum(1 for task in self._tasks if not task.done())

    def submit(self, requests: ActionRequest | Iterable[ActionRequest]) -> list[ActionResult]:
        """Queue requests; a call id that was already submitted is ignored."""
        if isinstance(requests, ActionRequest):
            requests = [requests]
        queued: list[ActionResult] = []
        for request in requests:
            if request.call_id in self._seen_call_ids:
                log.warning("Action already submitted", action=request.name, call_id=request.call_id)
                continue
            result = ActionResult(request=request)
            self._seen_call_ids.add(request.call_id)
            self._results[request.call_id] = result
            self._pending[request.call_id] = result
            queued.append(result)
        if queued:
            log.debug("Queued actions", count=len(queued))
        return queued

    def execute(self) -> int:
        """Start every pending request as a task; returns how many started."""
        started = 0
        while self._pending:
            _, result = self._pop_pending()
            task = asyncio.create_task(self._execute_one(result))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    def _pop_pending(self) -> tuple[str, ActionResult]:
        call_id = next(iter(self._pending))
        return call_id, self._pending.pop(call_id)

    def _lookup(self, name: str) -> ActionSpec | None:
        for registry in self.registries:
            if registry.has_action(name):
                return registry.resolve(name)
        return None

    async def _invoke(self, spec: ActionSpec, request: ActionRequest) -> Any:
        extra: dict[str, Any] = {}
        if spec.needs_context:
            extra["context"] = ActionContext(
                call_id=request.call_id,
                working_dir=self.working_dir,
                _supervisor=self.supervisor,
            )

        arguments = request.arguments
        if spec.parameter_order is None:
            value = spec.invoke(dict(arguments), **extra)
        else:
            positional: list[Any] = []
            keyword: dict[str, Any] = {}
            gap = False
            for name in spec.parameter_order:
                if name not in arguments:
                    gap = True
                elif gap:
                    keyword[name] = arguments[name]
                else:
                    positional.append(arguments[name])
            value = spec.invoke(*positional, **keyword, **extra)

        if inspect.isawaitable(value):
            value = await value
        return value

    async def _dispatch(self, result: ActionResult) -> None:
        request = result.request
        spec = self._lookup(request.name)
        if spec is None:
            result.fail(f"Action '{request.name}' not found. Please check the action name.")
            return
        try:
            value = await self._invoke(spec, request)
        except Exception as e:
            log.error("Action raised", action=request.name, call_id=request.call_id, error=str(e))
            result.fail(f"Error executing action: {e}")
            return
        if isinstance(value, ToolMessage):
            result.succeed(value)
        else:
            result.succeed("" if value is None else str(value))

    async def _execute_one(self, result: ActionResult) -> None:
        request = result.request
        try:
            if not request.extraction_ok:
                result.fail(request.failure_reason or "Unknown reason")
            elif request.is_completion(self.completion_sentinel):
                result.mark_running()
                result.succeed(COMPLETION_ACKNOWLEDGEMENT)
            else:
                async with self._semaphore:
                    result.mark_running()
                    self._running += 1
                    self.peak_running = max(self.peak_running, self._running)
                    log.debug("Running action", action=request.describe(), call_id=request.call_id)
                    try:
                        await self._dispatch(result)
                    finally:
                        self._running -= 1
        except Exception as e:
            log.error("Action execution crashed", action=request.name, error=str(e))
            if not result.is_finished:
                if result.state is ActionState.PENDING:
                    result.mark_running()
                result.fail(f"Error executing action: {e}")
        finally:
            if result.is_finished:
                self._emit(result)

    def _emit(self, result: ActionResult) -> None:
        content = result.observation()
        if self.supervisor.has_active():
            content = with_note(content, self.supervisor.summary())
        self._observations.append(Observation(result=result, content=content))
        if result.state is ActionState.SUCCESS:
            log.info("Action succeeded", action=result.request.name, call_id=result.call_id)
        else:
            log.warning(
                "Action failed",
                action=result.request.name,
                call_id=result.call_id,
                reason=result.text[:200],
            )

    def _drain(self, call_ids: set[str] | None = None) -> list[Observation]:
        if call_ids is None:
            drained, self._observations = self._observations, []
            return drained
        drained = [obs for obs in self._observations if obs.call_id in call_ids]
        self._observations = [obs for obs in self._observations if obs.call_id not in call_ids]
        return drained

    async def _wait(self, wait_all: bool, timeout: float | None) -> None:
        in_flight = {task for task in self._tasks if not task.done()}
        if not in_flight:
            return
        if wait_all:
            _, not_done = await asyncio.wait(in_flight, timeout=timeout)
            if not_done:
                log.warning(
                    "Timed out waiting for actions",
                    timeout=timeout,
                    still_running=len(not_done),
                )
        else:
            await asyncio.wait(in_flight, timeout=self.grace_period)

    async def observe(self, wait_all: bool = False, timeout: float | None = None) -> list[Observation]:
        """Start pending work and hand out every observation buffered so far.

        With ``wait_all`` the call waits for all in-flight actions (bounded by
        ``timeout``); otherwise it waits the grace period and returns whatever
        finished, leaving slower actions running for a later call.
        """
        self.execute()
        await self._wait(wait_all, timeout)
        return self._drain()

    async def run(
        self,
        requests: Iterable[ActionRequest],
        wait_all: bool = True,
        timeout: float | None = None,
    ) -> list[ActionResult]:
        """Submit a batch and return its results in submission order.

        Results that did not finish in time are returned in their current
        (pending or running) state and keep executing. Results hold the raw
        action output; the background-process note is only added to the
        observations handed out by ``observe``.
        """
        batch = list(requests)
        self.submit(batch)
        self.execute()
        await self._wait(wait_all, timeout)
        call_ids = {request.call_id for request in batch}
        self._drain(call_ids)
        return [self._results[request.call_id] for request in batch if request.call_id in self._results]

    async def wait_all(self) -> None:
        """Wait until every started action has finished."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def results(self) -> list[ActionResult]:
        return list(self._results.values())

    def status(self) -> dict[str, int]:
        done = sum(1 for r in self._results.values() if r.state is ActionState.SUCCESS)
        failed = sum(1 for r in self._results.values() if r.state is ActionState.FAILED)
        return {
            "pool_size": self.pool_size,
            "running": self._running,
            "in_flight": self.in_flight,
            "pending": len(self._pending),
            "done": done,
            "failed": failed,
            "background_processes": len(self.supervisor.active),
        }

    def clear(self) -> None:
        """Forget finished results and buffered observations."""
        self._pending.clear()
        self._observations.clear()
        self._results = {
            call_id: result
            for call_id, result in self._results.items()
            if not result.is_finished
        }

    async def aclose(self) -> None:
        """Clean up background processes and wait for outstanding actions."""
        report = await self.supervisor.cleanup()
        log.debug("Execution engine closed", cleanup=report)
        await self.wait_all()
