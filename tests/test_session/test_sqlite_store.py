import pytest

from deckhand.actions import ActionProtocol, ActionRequest, ActionResult, ToolMessage
from deckhand.history import ConversationTurn
from deckhand.session import SqliteSessionStore


@pytest.mark.asyncio
async def test_turns_round_trip_in_order(tmp_path):
    db_path = tmp_path / "nested" / "sessions.db"
    store = SqliteSessionStore(db_path=db_path)
    try:
        await store.save_turn("s1", ConversationTurn(role="user", content="hi"))
        await store.save_turn(
            "s1",
            ConversationTurn(
                role="assistant",
                content="",
                tool_calls=[{"id": "c1", "type": "function", "function": {"name": "A.b", "arguments": "{}"}}],
                group_id="g1",
            ),
        )
        await store.save_turn("s2", ConversationTurn(role="user", content="other session"))

        turns = await store.load_turns("s1")

        assert db_path.exists()
        assert [turn.role for turn in turns] == ["user", "assistant"]
        assert turns[1].tool_calls[0]["id"] == "c1"
        assert turns[1].group_id == "g1"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_results_are_serialized(tmp_path):
    store = SqliteSessionStore(db_path=tmp_path / "sessions.db")
    request = ActionRequest(name="Echo.run", arguments={"text": "x"}, call_id="c1", protocol=ActionProtocol.STRUCTURED)
    result = ActionResult(request=request)
    result.mark_running()
    result.succeed(ToolMessage(call_id="c1", name="Echo.run", text="x"))
    try:
        await store.save_result("s1", result)

        (record,) = await store.load_results("s1")

        assert record["call_id"] == "c1"
        assert record["state"] == "success"
        assert record["protocol"] == "structured"
        assert record["content"] == {"call_id": "c1", "name": "Echo.run", "text": "x"}
        assert record["finished_at"] is not None
    finally:
        await store.close()
