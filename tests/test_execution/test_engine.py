import asyncio

import pytest

from deckhand.actions import ActionProtocol, ActionRequest, ActionState, ToolMessage
from deckhand.exceptions import ActionExecutionError
from deckhand.execution import COMPLETION_ACKNOWLEDGEMENT, ActionContext, ExecutionEngine
from deckhand.tools.registry import ActionRegistry


def _registry() -> ActionRegistry:
    registry = ActionRegistry("test")

    async def echo(text):
        return text

    async def slow(delay):
        await asyncio.sleep(delay)
        return f"slept {delay}"

    async def boom():
        raise RuntimeError("kaboom")

    registry.register_function("Echo.run", echo, "Echo", [{"name": "text"}])
    registry.register_function("Sleep.run", slow, "Sleep", [{"name": "delay", "type": "float"}])
    registry.register_function("Boom.run", boom, "Fail", [])
    return registry


@pytest.mark.asyncio
async def test_pool_ceiling_is_respected():
    engine = ExecutionEngine(_registry(), pool_size=2, grace_period=0.01)
    requests = [ActionRequest(name="Sleep.run", arguments={"delay": 0.05}) for _ in range(5)]

    results = await engine.run(requests, wait_all=True, timeout=5)

    assert engine.peak_running == 2
    assert [r.state for r in results] == [ActionState.SUCCESS] * 5
    assert [r.call_id for r in results] == [r.call_id for r in requests]


@pytest.mark.asyncio
async def test_one_failing_action_does_not_affect_siblings():
    engine = ExecutionEngine(_registry())
    requests = [
        ActionRequest(name="Boom.run"),
        ActionRequest(name="Echo.run", arguments={"text": "fine"}),
    ]

    boom, echo = await engine.run(requests, timeout=5)

    assert boom.state is ActionState.FAILED
    assert boom.text == "Error executing action: kaboom"
    assert echo.state is ActionState.SUCCESS
    assert echo.text == "fine"


@pytest.mark.asyncio
async def test_unknown_action_is_not_found():
    engine = ExecutionEngine(_registry())

    (result,) = await engine.run([ActionRequest(name="Missing.run")], timeout=5)

    assert result.state is ActionState.FAILED
    assert result.text == "Action 'Missing.run' not found. Please check the action name."


@pytest.mark.asyncio
async def test_completion_sentinel_skips_lookup():
    registry = _registry()
    engine = ExecutionEngine(registry, completion_sentinel="TaskCompletion")

    (result,) = await engine.run([ActionRequest(name="task_completion")], timeout=5)

    assert result.state is ActionState.SUCCESS
    assert result.text == COMPLETION_ACKNOWLEDGEMENT
    assert not registry.has_action("task_completion")


@pytest.mark.asyncio
async def test_failed_extraction_is_never_invoked():
    calls = []
    registry = ActionRegistry()
    registry.register_function("Echo.run", lambda text: calls.append(text), "Echo", [{"name": "text"}])
    engine = ExecutionEngine(registry)

    (result,) = await engine.run([ActionRequest.failed("Echo.run", "bad markup")], timeout=5)

    assert calls == []
    assert result.state is ActionState.FAILED
    assert result.text == "bad markup"
    assert result.started_at is None


@pytest.mark.asyncio
async def test_observe_without_wait_returns_after_grace_period():
    engine = ExecutionEngine(_registry(), grace_period=0.05)
    fast = ActionRequest(name="Echo.run", arguments={"text": "quick"})
    slow = ActionRequest(name="Sleep.run", arguments={"delay": 0.5})
    engine.submit([fast, slow])

    first = await engine.observe(wait_all=False)
    assert [obs.call_id for obs in first] == [fast.call_id]
    assert engine.in_flight == 1

    second = await engine.observe(wait_all=True, timeout=5)
    assert [obs.call_id for obs in second] == [slow.call_id]

    assert await engine.observe(wait_all=True, timeout=1) == []


@pytest.mark.asyncio
async def test_observations_are_buffered_in_completion_order():
    engine = ExecutionEngine(_registry())
    slow = ActionRequest(name="Sleep.run", arguments={"delay": 0.1})
    fast = ActionRequest(name="Echo.run", arguments={"text": "x"})
    engine.submit([slow, fast])

    observations = await engine.observe(wait_all=True, timeout=5)

    assert [obs.call_id for obs in observations] == [fast.call_id, slow.call_id]


@pytest.mark.asyncio
async def test_wait_timeout_leaves_work_running():
    engine = ExecutionEngine(_registry())
    request = ActionRequest(name="Sleep.run", arguments={"delay": 0.3})

    (result,) = await engine.run([request], wait_all=True, timeout=0.05)

    assert result.state is ActionState.RUNNING
    await engine.wait_all()
    assert result.state is ActionState.SUCCESS


@pytest.mark.asyncio
async def test_duplicate_call_id_executes_once():
    calls = []
    registry = ActionRegistry()
    registry.register_function("Echo.run", lambda text: calls.append(text), "Echo", [{"name": "text"}])
    engine = ExecutionEngine(registry)
    request = ActionRequest(name="Echo.run", arguments={"text": "once"})

    engine.submit(request)
    engine.submit(request)
    await engine.observe(wait_all=True, timeout=5)

    assert calls == ["once"]


@pytest.mark.asyncio
async def test_arguments_map_positionally_then_by_keyword():
    received = {}

    def action(a, b=None, c=None):
        received.update(a=a, b=b, c=c)
        return "ok"

    registry = ActionRegistry()
    registry.register_function("Pos.run", action, "", [{"name": "a"}, {"name": "b"}, {"name": "c"}])
    engine = ExecutionEngine(registry)

    await engine.run([ActionRequest(name="Pos.run", arguments={"c": 3, "a": 1})], timeout=5)

    assert received == {"a": 1, "b": None, "c": 3}


@pytest.mark.asyncio
async def test_undeclared_order_passes_whole_argument_map():
    registry = ActionRegistry()
    registry.register_function("Free.run", lambda payload: sorted(payload), "free-form")
    engine = ExecutionEngine(registry)

    (result,) = await engine.run([ActionRequest(name="Free.run", arguments={"b": 1, "a": 2})], timeout=5)

    assert result.text == "['a', 'b']"


@pytest.mark.asyncio
async def test_return_values_are_stringified_or_passed_through():
    message = ToolMessage(call_id="c", name="Msg.run", text="structured")
    registry = ActionRegistry()
    registry.register_function("None.run", lambda: None, "", [])
    registry.register_function("Num.run", lambda: 42, "", [])
    registry.register_function("Msg.run", lambda: message, "", [])
    engine = ExecutionEngine(registry)

    none, num, msg = await engine.run(
        [ActionRequest(name="None.run"), ActionRequest(name="Num.run"), ActionRequest(name="Msg.run")],
        timeout=5,
    )

    assert none.text == ""
    assert num.text == "42"
    assert msg.content is message


@pytest.mark.asyncio
async def test_action_execution_error_becomes_failed_result():
    def refuse():
        raise ActionExecutionError("Refuse.run", "not allowed")

    registry = ActionRegistry()
    registry.register_function("Refuse.run", refuse, "", [])
    engine = ExecutionEngine(registry)

    (result,) = await engine.run([ActionRequest(name="Refuse.run")], timeout=5)

    assert result.state is ActionState.FAILED
    assert "not allowed" in result.text


@pytest.mark.asyncio
async def test_registries_are_consulted_in_priority_order():
    first = ActionRegistry("first")
    second = ActionRegistry("second")
    first.register_function("Who.run", lambda: "first", "", [])
    second.register_function("Who.run", lambda: "second", "", [])
    second.register_function("Only.run", lambda: "second only", "", [])
    engine = ExecutionEngine([first, second])

    who, only = await engine.run([ActionRequest(name="Who.run"), ActionRequest(name="Only.run")], timeout=5)

    assert who.text == "first"
    assert only.text == "second only"


@pytest.mark.asyncio
async def test_context_is_passed_to_actions_that_need_it():
    seen: list[ActionContext] = []

    async def needs(context):
        seen.append(context)
        return context.list_processes()

    registry = ActionRegistry()
    registry.register_function("Ctx.run", needs, "", [], needs_context=True)
    engine = ExecutionEngine(registry, working_dir="/")
    request = ActionRequest(name="Ctx.run")

    (result,) = await engine.run([request], timeout=5)

    assert seen[0].call_id == request.call_id
    assert seen[0].working_dir == "/"
    assert result.text == "No background processes are running."


@pytest.mark.asyncio
async def test_background_process_summary_is_appended_to_observations():
    async def spawn(context):
        process = await asyncio.create_subprocess_shell("sleep 30", start_new_session=True)
        return context.register_background_process(process, "sleep 30")

    registry = ActionRegistry()
    registry.register_function("Spawn.run", spawn, "", [], needs_context=True)
    registry.register_function("Echo.run", lambda text: text, "", [{"name": "text"}])
    engine = ExecutionEngine(registry, supervisor=None)
    try:
        engine.submit(ActionRequest(name="Spawn.run"))
        await engine.observe(wait_all=True, timeout=5)

        request = ActionRequest(name="Echo.run", arguments={"text": "hi"}, protocol=ActionProtocol.STRUCTURED)
        engine.submit(request)
        (observation,) = await engine.observe(wait_all=True, timeout=5)

        assert isinstance(observation.content, ToolMessage)
        assert observation.content.text.startswith("hi\n\n1 background process(es) running:")
        assert "sleep 30" in observation.content.text
        assert observation.result.text == "hi"

        (result,) = await engine.run([ActionRequest(name="Echo.run", arguments={"text": "again"})], timeout=5)
        assert result.text == "again"
    finally:
        await engine.aclose()

    assert not engine.supervisor.has_active()


@pytest.mark.asyncio
async def test_status_counts():
    engine = ExecutionEngine(_registry(), pool_size=3)

    await engine.run([ActionRequest(name="Echo.run", arguments={"text": "a"}), ActionRequest(name="Boom.run")], timeout=5)
    status = engine.status()

    assert status["pool_size"] == 3
    assert status["done"] == 1
    assert status["failed"] == 1
    assert status["running"] == 0
