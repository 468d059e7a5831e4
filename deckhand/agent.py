"""Agent loop: ask the model, run the requested actions, feed results back."""

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from deckhand.actions import ActionProtocol, ActionRequest, ActionResult, ToolMessage
from deckhand.config import get_config
from deckhand.execution import ExecutionEngine, Observation
from deckhand.extractor import extract, strip_completion_tags
from deckhand.history import ConversationHistory, ConversationTurn
from deckhand.instructions import get_instruction_loader
from deckhand.llm import LLMProvider, LLMResponse, ToolDefinition, get_provider
from deckhand.logging import get_logger
from deckhand.processes import BackgroundProcessSupervisor
from deckhand.session import SessionStore
from deckhand.tools import ActionRegistry, get_action_registry, register_builtin_toolkits
from deckhand.tools.agent_tool import register_agent_as_action

log = get_logger(__name__)

PostProcessor = Callable[[str], str | Awaitable[str]]


class AgentState(str, Enum):
    """Where the agent loop currently is."""

    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXTRACTING_ACTIONS = "extracting_actions"
    EXECUTING = "executing"
    OBSERVING = "observing"
    DONE = "done"


def _default_registry() -> ActionRegistry:
    registry = get_action_registry()
    enabled = [
        name for name in get_config().tools.enabled
        if not any(action.startswith(f"{name}.") for action in registry.list_actions())
    ]
    if enabled:
        register_builtin_toolkits(registry, enabled)
    return registry


class Agent:
    """Conversational agent driving actions through an execution engine.

    Each model turn gets its own ``ExecutionEngine``; all engines share one
    ``BackgroundProcessSupervisor`` so processes started in one turn stay
    observable in later turns. Only errors raised by the model provider
    escape ``run``; every action failure is reported back to the model.
    """

    def __init__(
        self,
        name: str = "deckhand",
        provider: LLMProvider | None = None,
        registry: ActionRegistry | Sequence[ActionRegistry] | None = None,
        system: str = "",
        profile: str = "",
        actions: list[str] | None = None,
        sub_agents: list["Agent"] | None = None,
        use_function_calling: bool | None = None,
        pool_size: int | None = None,
        observe_timeout: float | None = None,
        max_tokens: int | None = None,
        max_iterations: int | None = None,
        session_store: SessionStore | None = None,
        session_id: str | None = None,
        post_processor: PostProcessor | None = None,
        working_dir: Path | str | None = None,
    ):
        cfg = get_config()
        self.name = name
        self.provider = provider or get_provider()
        self.system = system
        self.profile = profile
        self.use_function_calling = (
            cfg.model.use_function_calling if use_function_calling is None else use_function_calling
        )
        self.pool_size = pool_size or cfg.execution.pool_size
        self.observe_timeout = cfg.execution.observe_timeout if observe_timeout is None else observe_timeout
        self.max_iterations = max_iterations if max_iterations is not None else cfg.execution.max_iterations
        self.completion_sentinel = cfg.tools.completion_sentinel
        self.json_write_prefixes = list(cfg.tools.json_write_prefixes)
        self.working_dir = working_dir
        self.post_processor = post_processor

        if registry is None:
            self.registries: list[ActionRegistry] = [_default_registry()]
        elif isinstance(registry, ActionRegistry):
            self.registries = [registry]
        else:
            self.registries = list(registry)
        self._agent_registry = ActionRegistry(f"{name}-agents")
        self.registries.append(self._agent_registry)
        self._action_filter = list(actions) if actions is not None else None
        self.sub_agents: list[Agent] = []
        for sub_agent in sub_agents or []:
            register_agent_as_action(self._agent_registry, sub_agent)
            self.sub_agents.append(sub_agent)

        self.supervisor = BackgroundProcessSupervisor(stop_grace_period=cfg.execution.stop_grace_period)
        self.history = ConversationHistory(system=self.system_prompt, max_tokens=max_tokens)
        self.state = AgentState.IDLE
        self.last_usage: dict[str, int] = {}

        self.session_store = session_store
        self.session_id = session_id or uuid.uuid4().hex
        self._pending_saves: set[asyncio.Task[None]] = set()
        self._lingering: set[ExecutionEngine] = set()

    async def __aenter__(self) -> "Agent":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    def _is_exposed(self, action: str) -> bool:
        if self._action_filter is None or action.startswith("Agent."):
            return True
        return any(
            action == allowed or action.startswith(f"{allowed}.")
            for allowed in self._action_filter
        )

    @property
    def action_names(self) -> list[str]:
        """Exposed action names, first registry wins on duplicates."""
        names: list[str] = []
        for registry in self.registries:
            for action in registry.list_actions():
                if action not in names and self._is_exposed(action):
                    names.append(action)
        return names

    def _owning_registry(self, action: str) -> ActionRegistry | None:
        for registry in self.registries:
            if registry.has_action(action):
                return registry
        return None

    def known_actions(self) -> dict[str, list[str]]:
        """``{action: parameter names}`` used by the textual extractor."""
        table: dict[str, list[str]] = {}
        for action in self.action_names:
            registry = self._owning_registry(action)
            if registry is not None:
                table[action] = registry.parameter_names(action)
        return table

    def tool_definitions(self) -> list[ToolDefinition]:
        definitions: list[ToolDefinition] = []
        for action in self.action_names:
            registry = self._owning_registry(action)
            if registry is not None:
                definitions.extend(registry.get_definitions([action]))
        return definitions

    def _describe_actions(self) -> str:
        blocks = []
        for action in self.action_names:
            registry = self._owning_registry(action)
            if registry is not None:
                blocks.append(registry.describe([action]))
        return "\n\n".join(blocks)

    @property
    def system_prompt(self) -> str:
        """System prompt with the textual tool protocol appended when it is in use."""
        parts = [self.system.strip()] if self.system.strip() else []
        if self.profile.strip():
            parts.append(f"Your profile: {self.profile.strip()}")
        names = self.action_names
        if names and not self.use_function_calling:
            loader = get_instruction_loader()
            parts.append(loader.render(
                "system_tools_prompt.md",
                available_tools="\n".join(f"- {name}" for name in names),
                tool_descriptions=self._describe_actions(),
                output_format=loader.render(
                    "output_format.md",
                    completion_sentinel=self.completion_sentinel,
                ),
            ))
        return "\n\n".join(parts)

    def refresh_system_prompt(self) -> None:
        self.history.update_system(self.system_prompt)

    def add_sub_agent(self, agent: "Agent") -> None:
        """Expose another agent as the ``Agent.<name>`` action."""
        register_agent_as_action(self._agent_registry, agent)
        self.sub_agents.append(agent)
        self.refresh_system_prompt()

    def _persist(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def _save_turn(self, turn: ConversationTurn) -> None:
        if self.session_store is None:
            return
        try:
            await self.session_store.save_turn(self.session_id, turn)
        except Exception as e:
            log.warning("Failed to persist turn", session_id=self.session_id, error=str(e))

    async def _save_result(self, result: ActionResult) -> None:
        if self.session_store is None:
            return
        try:
            await self.session_store.save_result(self.session_id, result)
        except Exception as e:
            log.warning("Failed to persist action result", session_id=self.session_id, error=str(e))

    def _record(self, turn: ConversationTurn) -> ConversationTurn:
        if self.session_store is not None:
            self._persist(self._save_turn(turn))
        return turn

    async def _call_model(self) -> LLMResponse:
        self.state = AgentState.AWAITING_MODEL
        removed = self.history.truncate()
        if removed:
            log.info("Truncated history", agent=self.name, removed=removed, usage=self.history.context_usage)
        tools = self.tool_definitions() if self.use_function_calling else None
        response = await self.provider.complete(self.history.to_messages(), tools=tools or None)
        self.last_usage = dict(response.usage or {})
        return response

    def _unfinished_observation(self, request: ActionRequest) -> str | ToolMessage:
        text = (
            f"Action is still running after {self.observe_timeout:g}s; "
            "its result will not be reported. Use CommandLineTool for long-running work."
        )
        if request.protocol is ActionProtocol.STRUCTURED:
            return ToolMessage(call_id=request.call_id, name=request.name, text=text)
        return f"Toolcall {request.describe()} failed: {text}"

    @property
    def lingering_engines(self) -> int:
        """Engines from earlier turns whose actions outlived the observe timeout."""
        return len(self._lingering)

    def _prune_lingering(self) -> None:
        self._lingering = {engine for engine in self._lingering if engine.in_flight}

    async def _execute(self, requests: list[ActionRequest]) -> dict[str, Observation]:
        self.state = AgentState.EXECUTING
        self._prune_lingering()
        engine = ExecutionEngine(
            self.registries,
            pool_size=self.pool_size,
            supervisor=self.supervisor,
            completion_sentinel=self.completion_sentinel,
            working_dir=self.working_dir,
        )
        engine.submit(requests)
        self.state = AgentState.OBSERVING
        observations = await engine.observe(wait_all=True, timeout=self.observe_timeout)
        if engine.in_flight:
            self._lingering.add(engine)
        return {obs.call_id: obs for obs in observations}

    async def _finish(self, text: str) -> str:
        self.state = AgentState.DONE
        answer = strip_completion_tags(text, self.completion_sentinel)
        if self.post_processor is not None:
            processed = self.post_processor(answer)
            if inspect.isawaitable(processed):
                processed = await processed
            answer = str(processed)
        return answer

    async def run(self, instruction: str) -> str:
        """Run the loop on ``instruction`` until the model stops requesting actions."""
        self._prune_lingering()
        self._record(self.history.add("user", instruction))
        log.info("Agent run started", agent=self.name, session_id=self.session_id)

        iteration = 0
        last_text = ""
        while True:
            if self.max_iterations is not None and iteration >= self.max_iterations:
                log.warning("Max iterations reached", agent=self.name, iterations=iteration)
                return await self._finish(last_text)
            iteration += 1

            response = await self._call_model()
            last_text = response.content or ""

            self.state = AgentState.EXTRACTING_ACTIONS
            requests = extract(
                response,
                self.known_actions(),
                json_write_prefixes=self.json_write_prefixes,
            )
            if not requests:
                self._record(self.history.add("assistant", last_text))
                log.info("Agent run finished", agent=self.name, iterations=iteration)
                return await self._finish(last_text)

            group_id = self.history.add_action_requests(last_text, requests)
            self._record(self.history.last_turn())
            log.info(
                "Executing actions",
                agent=self.name,
                actions=[request.name for request in requests],
            )

            observations = await self._execute(requests)
            for request in requests:
                observation = observations.get(request.call_id)
                if observation is None:
                    log.warning("Action did not finish in time", action=request.name, call_id=request.call_id)
                    content = self._unfinished_observation(request)
                else:
                    content = observation.content
                    if self.session_store is not None:
                        self._persist(self._save_result(observation.result))
                self._record(self.history.add_observation(content, group_id))

    async def aclose(self) -> None:
        """Stop background processes, then settle lingering actions and saves."""
        report = await self.supervisor.aclose()
        log.debug("Agent closed background processes", agent=self.name, report=report)
        for engine in list(self._lingering):
            try:
                await asyncio.wait_for(engine.wait_all(), timeout=self.observe_timeout)
            except asyncio.TimeoutError:
                log.warning("Abandoned unfinished actions on close", agent=self.name, count=engine.in_flight)
        self._lingering.clear()
        if self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)
        for sub_agent in self.sub_agents:
            await sub_agent.aclose()
