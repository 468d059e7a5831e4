"""Expose an agent as an action of another agent."""

from typing import TYPE_CHECKING

from deckhand.logging import get_logger
from deckhand.tools.registry import ActionParameter, ActionRegistry, ActionSpec

if TYPE_CHECKING:
    from deckhand.agent import Agent

log = get_logger(__name__)

AGENT_NAMESPACE = "Agent"


def agent_action_name(agent: "Agent") -> str:
    return f"{AGENT_NAMESPACE}.{agent.name}"


def register_agent_as_action(registry: ActionRegistry, agent: "Agent") -> ActionSpec:
    """Register ``agent`` in ``registry`` as ``Agent.<name>``.

    Calling the action runs the sub-agent on the given instruction and returns
    its final answer.
    """

    async def _delegate(instruction: str) -> str:
        log.info("Delegating to sub-agent", agent=agent.name)
        return await agent.run(str(instruction))

    description = f"Delegate a task to the '{agent.name}' agent."
    if getattr(agent, "profile", ""):
        description += f" Profile: {agent.profile}"

    spec = ActionSpec(
        name=agent_action_name(agent),
        invoke=_delegate,
        description=description,
        parameters=[
            ActionParameter(
                name="instruction",
                type="str",
                description="The task for the agent, with all context it needs.",
            ),
        ],
        returns="The agent's final answer",
    )
    registry.register(spec)
    return spec
