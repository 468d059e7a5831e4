"""Action registry: explicit name -> callable mapping built at startup."""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, Field

from deckhand.exceptions import ActionNotFoundError, ActionRegistrationError
from deckhand.llm import ToolDefinition
from deckhand.logging import get_logger

log = get_logger(__name__)

_JSON_SCHEMA_TYPES = {
    "str": "string",
    "string": "string",
    "int": "integer",
    "integer": "integer",
    "float": "number",
    "number": "number",
    "bool": "boolean",
    "boolean": "boolean",
    "dict": "object",
    "object": "object",
    "list": "array",
    "array": "array",
}


def _schema_type(type_name: str) -> str:
    """Map a loose type label (``Optional[Dict[str, str]]``) to a JSON schema type."""
    cleaned = type_name.strip()
    if cleaned.startswith("Optional[") and cleaned.endswith("]"):
        cleaned = cleaned[len("Optional["):-1]
    base = cleaned.split("[", 1)[0].strip().lower()
    return _JSON_SCHEMA_TYPES.get(base, "string")


class ActionParameter(BaseModel):
    """One declared action parameter."""

    name: str
    type: str = "str"
    description: str = ""
    optional: bool = False


class ActionMeta(BaseModel):
    """Declaration of one toolkit method in a toolkit's ``ACTIONS`` table."""

    description: str
    params: list[ActionParameter] = Field(default_factory=list)
    returns: str = "str"
    needs_context: bool = False


@dataclass
class ActionSpec:
    """A resolved action: the callable plus how to call it."""

    name: str
    invoke: Callable[..., Any]
    description: str = ""
    parameters: list[ActionParameter] = field(default_factory=list)
    parameter_order: list[str] | None = None
    returns: str = "str"
    needs_context: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ActionRegistrationError("Action must have a name")
        if not callable(self.invoke):
            raise ActionRegistrationError(f"Action '{self.name}' is not callable")
        if self.parameter_order is None and self.parameters:
            self.parameter_order = [param.name for param in self.parameters]

    def get_definition(self) -> ToolDefinition:
        """Function-calling definition with a JSON schema for the parameters."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in self.parameters:
            properties[param.name] = {
                "type": _schema_type(param.type),
                "description": param.description,
            }
            if not param.optional:
                required.append(param.name)
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": properties,
                "required": required,
            },
        )

    def describe(self) -> str:
        """Textual-protocol description used in the system prompt."""
        lines = [f"<{self.name}>", self.description.strip()]
        if self.parameters:
            lines.append("Args:")
            for param in self.parameters:
                suffix = ", optional" if param.optional else ""
                lines.append(f"    {param.name} ({param.type}{suffix}): {param.description}")
        lines.append(f"Returns: {self.returns}")
        example_args = "".join(
            f"<{param.name}>...</{param.name}>" for param in self.parameters if not param.optional
        )
        lines.append(f"Example: <{self.name}>{example_args}</{self.name}>")
        lines.append(f"</{self.name}>")
        return "\n".join(line for line in lines if line)


class ActionRegistry:
    """Registry resolving action names to callables."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._actions: dict[str, ActionSpec] = {}

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def register(self, spec: ActionSpec) -> bool:
        """Register an action; an existing name is kept and the new one skipped."""
        if spec.name in self._actions:
            log.warning("Action already registered", action=spec.name, registry=self.name)
            return False
        log.debug("Registering action", action=spec.name, registry=self.name)
        self._actions[spec.name] = spec
        return True

    def register_function(
        self,
        name: str,
        func: Callable[..., Any],
        description: str = "",
        params: list[ActionParameter | dict[str, Any]] | None = None,
        *,
        returns: str = "str",
        needs_context: bool = False,
    ) -> ActionSpec:
        """Register a plain function or coroutine function as an action.

        With ``params=None`` the action receives the whole argument mapping as
        its single positional argument; an explicit list (even an empty one)
        maps arguments positionally in declared order.
        """
        parameters = [
            param if isinstance(param, ActionParameter) else ActionParameter(**param)
            for param in (params or [])
        ]
        spec = ActionSpec(
            name=name,
            invoke=func,
            description=description or (inspect.getdoc(func) or ""),
            parameters=parameters,
            parameter_order=None if params is None else [param.name for param in parameters],
            returns=returns,
            needs_context=needs_context,
        )
        self.register(spec)
        return spec

    def register_toolkit(self, toolkit: Any, namespace: str | None = None) -> list[str]:
        """Register every method declared in ``toolkit.ACTIONS``.

        Names are ``<namespace>.<method>``; the namespace defaults to the
        toolkit class name.
        """
        table = getattr(toolkit, "ACTIONS", None)
        if not isinstance(table, dict) or not table:
            raise ActionRegistrationError(
                f"{type(toolkit).__name__} does not declare an ACTIONS table"
            )
        prefix = namespace or type(toolkit).__name__
        registered: list[str] = []
        for method_name, raw_meta in table.items():
            meta = raw_meta if isinstance(raw_meta, ActionMeta) else ActionMeta(**raw_meta)
            method = getattr(toolkit, method_name, None)
            if method is None or not callable(method):
                raise ActionRegistrationError(
                    f"{type(toolkit).__name__}.{method_name} is declared but not callable"
                )
            spec = ActionSpec(
                name=f"{prefix}.{method_name}",
                invoke=method,
                description=meta.description,
                parameters=list(meta.params),
                parameter_order=[param.name for param in meta.params],
                returns=meta.returns,
                needs_context=meta.needs_context,
            )
            if self.register(spec):
                registered.append(spec.name)
        return registered

    def has_action(self, name: str) -> bool:
        """Return whether an action name is registered."""
        return name in self._actions

    def resolve(self, name: str) -> ActionSpec:
        """Get an action by name.

        Raises:
            ActionNotFoundError if not found
        """
        if name not in self._actions:
            raise ActionNotFoundError(name)
        return self._actions[name]

    def parameter_names(self, name: str) -> list[str]:
        spec = self._actions.get(name)
        if spec is None:
            return []
        return list(spec.parameter_order or [])

    def list_actions(self) -> list[str]:
        return list(self._actions.keys())

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Function-calling definitions, optionally restricted to ``names``."""
        selected = names if names is not None else self.list_actions()
        return [self._actions[name].get_definition() for name in selected if name in self._actions]

    def describe(self, names: list[str] | None = None) -> str:
        """Concatenated textual descriptions for the system prompt."""
        selected = names if names is not None else self.list_actions()
        return "\n\n".join(
            self._actions[name].describe() for name in selected if name in self._actions
        )


# Global registry
_registry: ActionRegistry | None = None


def get_action_registry() -> ActionRegistry:
    """Get the global action registry."""
    global _registry
    if _registry is None:
        _registry = ActionRegistry()
    return _registry


def set_action_registry(registry: ActionRegistry) -> None:
    """Set the global action registry."""
    global _registry
    _registry = registry
