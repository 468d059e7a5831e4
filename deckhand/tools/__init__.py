"""Built-in toolkits and the action registry."""

from deckhand.tools.agent_tool import register_agent_as_action
from deckhand.tools.file_editor import FileEditor
from deckhand.tools.registry import (
    ActionMeta,
    ActionParameter,
    ActionRegistry,
    ActionSpec,
    get_action_registry,
    set_action_registry,
)
from deckhand.tools.shell import CommandLineTool
from deckhand.tools.think import ThinkTool

BUILTIN_TOOLKITS = {
    "CommandLineTool": CommandLineTool,
    "FileEditor": FileEditor,
    "ThinkTool": ThinkTool,
}


def register_builtin_toolkits(registry: ActionRegistry, enabled: list[str] | None = None) -> list[str]:
    """Register the built-in toolkits named in ``enabled`` (all by default)."""
    names = list(BUILTIN_TOOLKITS) if enabled is None else enabled
    registered: list[str] = []
    for name in names:
        toolkit_cls = BUILTIN_TOOLKITS.get(name)
        if toolkit_cls is None:
            continue
        registered.extend(registry.register_toolkit(toolkit_cls(), namespace=name))
    return registered


__all__ = [
    "ActionMeta",
    "ActionParameter",
    "ActionRegistry",
    "ActionSpec",
    "BUILTIN_TOOLKITS",
    "CommandLineTool",
    "FileEditor",
    "ThinkTool",
    "get_action_registry",
    "register_agent_as_action",
    "register_builtin_toolkits",
    "set_action_registry",
]
