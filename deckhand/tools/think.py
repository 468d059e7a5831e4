"""Think toolkit: a scratchpad action with no side effects."""

from typing import Any


class ThinkTool:
    """Let the model reason in a dedicated step; the thought is echoed back."""

    ACTIONS: dict[str, dict[str, Any]] = {
        "execute": {
            "description": (
                "Use the tool to think about something when complex reasoning is needed.\n"
                "Good example: <ThinkTool.execute><thought>your thought here</thought></ThinkTool.execute>\n"
                'Bad example: <ThinkTool.execute>{"thought": "your thought here"}</ThinkTool.execute>'
            ),
            "params": [
                {"name": "thought", "type": "str", "description": "The thought to think about."},
            ],
            "returns": "The complete thought result.",
        },
    }

    async def execute(self, thought: Any = "") -> str:
        return str(thought).strip() or "Thinking complete!"
