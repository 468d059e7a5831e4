"""Extract action requests from raw model output.

Two wire shapes are supported:

* the textual protocol, where actions are embedded in free text as
  ``<Namespace.method><param>value</param></Namespace.method>``;
* the structured protocol, where the provider returns
  ``(name, arguments_json, call_id)`` function-call triples.

Extraction never raises. A request that cannot be understood is returned with
``extraction_ok=False`` and a reason the model can act on.
"""

import json
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

from deckhand.actions import ActionProtocol, ActionRequest, new_call_id
from deckhand.llm import LLMResponse, ToolCall
from deckhand.logging import get_logger

log = get_logger(__name__)

DEFAULT_JSON_WRITE_PREFIXES: tuple[str, ...] = ("FileEditor.", "ApiTool.")

_JSON_PATH_CLOSE_RE = re.compile(r"\.json\s*</(path|filePath|apiFilePath)>")

_NAMED_ENTITIES = {
    "quot": '"',
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "apos": "'",
}
_ENTITY_RE = re.compile(r"&(?:(quot|amp|lt|gt|apos)|#(\d+)|#[xX]([0-9a-fA-F]+));")

_MALFORMED_OBJECT_REASON = (
    "Arguments were given as a bare JSON object. Wrap every argument in its "
    "own tag, e.g. <{name}><arg_name>value</arg_name></{name}>."
)


class ParameterLookup(Protocol):
    """Anything that can list the declared parameters of an action."""

    def parameter_names(self, name: str) -> list[str]: ...

    def list_actions(self) -> list[str]: ...


KnownActions = Mapping[str, Sequence[str]] | ParameterLookup


def _known_action_table(known_actions: KnownActions | None) -> dict[str, list[str]]:
    """Normalize the known-action argument into ``{name: [param, ...]}``."""
    if known_actions is None:
        return {}
    if isinstance(known_actions, Mapping):
        table: dict[str, list[str]] = {}
        for name, params in known_actions.items():
            if isinstance(params, str):
                table[str(name)] = [params]
            else:
                table[str(name)] = [str(item) for item in (params or [])]
        return table
    return {
        name: list(known_actions.parameter_names(name))
        for name in known_actions.list_actions()
    }


def _replace_entity(match: re.Match[str]) -> str:
    named, decimal, hexadecimal = match.groups()
    if named:
        return _NAMED_ENTITIES[named]
    try:
        codepoint = int(decimal, 10) if decimal else int(hexadecimal, 16)
        return chr(codepoint)
    except (ValueError, OverflowError):
        return match.group(0)


def unescape_entities(text: str) -> str:
    """Unescape XML/HTML entities in one pass.

    Only ``&quot; &amp; &lt; &gt; &apos;`` and numeric references are
    handled. The replacement text is never rescanned, so ``&amp;quot;``
    becomes ``&quot;``.
    """
    if "&" not in text:
        return text
    return _ENTITY_RE.sub(_replace_entity, text)


def is_json_file_write(
    span: str,
    name: str,
    prefixes: Iterable[str] = DEFAULT_JSON_WRITE_PREFIXES,
) -> bool:
    """Whether ``span`` writes a ``.json`` file through a file-writing action."""
    if not name.startswith(tuple(prefixes)):
        return False
    return bool(_JSON_PATH_CLOSE_RE.search(span))


def literal_parse(value: str) -> Any:
    """Parse a JSON literal, keeping the original string when it is not one."""
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


def _tag_pattern(name: str) -> re.Pattern[str]:
    escaped = re.escape(name)
    return re.compile(f"<{escaped}>(.*?)</{escaped}>", re.DOTALL)


def parse_parameters(
    inner: str,
    parameter_names: Sequence[str],
    *,
    keep_literal: bool = False,
) -> dict[str, Any]:
    """Read ``<param>value</param>`` tags out of an action span body."""
    arguments: dict[str, Any] = {}
    for param in parameter_names:
        match = _tag_pattern(param).search(inner)
        if not match:
            continue
        value = unescape_entities(match.group(1).strip())
        arguments[param] = value if keep_literal else literal_parse(value)
    return arguments


def extract_textual(
    text: str,
    known_actions: KnownActions | None,
    *,
    json_write_prefixes: Iterable[str] = DEFAULT_JSON_WRITE_PREFIXES,
) -> list[ActionRequest]:
    """Extract textual-protocol actions in the order they appear in ``text``."""
    if not text:
        return []
    prefixes = tuple(json_write_prefixes)
    found: list[tuple[int, ActionRequest]] = []

    for name, parameter_names in _known_action_table(known_actions).items():
        for match in _tag_pattern(name).finditer(text):
            span = match.group(0)
            inner = match.group(1).strip()
            json_write = is_json_file_write(span, name, prefixes)

            if not json_write and inner.startswith("{") and inner.endswith("}"):
                log.warning("Malformed action arguments", action=name)
                found.append((
                    match.start(),
                    ActionRequest.failed(
                        name,
                        _MALFORMED_OBJECT_REASON.format(name=name),
                        raw_text=span,
                    ),
                ))
                continue

            arguments = parse_parameters(inner, parameter_names, keep_literal=json_write)
            found.append((
                match.start(),
                ActionRequest(
                    name=name,
                    arguments=arguments,
                    protocol=ActionProtocol.TEXTUAL,
                    raw_text=span,
                ),
            ))

    found.sort(key=lambda item: item[0])
    return [request for _, request in found]


def extract_structured(tool_calls: Iterable[ToolCall]) -> list[ActionRequest]:
    """Convert provider function-call triples into action requests."""
    requests: list[ActionRequest] = []
    for tc in tool_calls:
        name = str(tc.name or "").strip()
        call_id = str(tc.id or "").strip() or new_call_id()
        raw = tc.arguments

        if isinstance(raw, Mapping):
            requests.append(ActionRequest(
                name=name,
                arguments=dict(raw),
                call_id=call_id,
                protocol=ActionProtocol.STRUCTURED,
                raw_text=json.dumps(raw, ensure_ascii=False, default=str),
            ))
            continue

        raw_text = "" if raw is None else str(raw)
        if not raw_text.strip():
            parsed: Any = {}
        else:
            try:
                parsed = json.loads(raw_text)
            except json.JSONDecodeError as e:
                log.warning("Failed to parse action arguments", action=name, error=str(e))
                requests.append(ActionRequest.failed(
                    name,
                    f"Failed to parse arguments as JSON: {e}",
                    protocol=ActionProtocol.STRUCTURED,
                    raw_text=raw_text,
                    call_id=call_id,
                ))
                continue

        if not isinstance(parsed, dict):
            requests.append(ActionRequest.failed(
                name,
                f"Arguments must be a JSON object, got {type(parsed).__name__}",
                protocol=ActionProtocol.STRUCTURED,
                raw_text=raw_text,
                call_id=call_id,
            ))
            continue

        requests.append(ActionRequest(
            name=name,
            arguments=parsed,
            call_id=call_id,
            protocol=ActionProtocol.STRUCTURED,
            raw_text=raw_text,
        ))
    return requests


def extract(
    response: LLMResponse | str,
    known_actions: KnownActions | None = None,
    *,
    json_write_prefixes: Iterable[str] = DEFAULT_JSON_WRITE_PREFIXES,
) -> list[ActionRequest]:
    """Extract every action request from one model response.

    Structured function calls take precedence; the textual protocol is used
    when the response carries only text.
    """
    if isinstance(response, LLMResponse):
        if response.tool_calls:
            return extract_structured(response.tool_calls)
        text = response.content
    else:
        text = response
    return extract_textual(text or "", known_actions, json_write_prefixes=json_write_prefixes)


def has_actions(text: str, known_actions: KnownActions | None) -> bool:
    """Cheap check for any complete ``<Name>...</Name>`` pair in ``text``."""
    if not text:
        return False
    for name in _known_action_table(known_actions):
        if f"<{name}>" in text and f"</{name}>" in text:
            return True
    return False


def strip_completion_tags(text: str, sentinel: str = "TaskCompletion") -> str:
    """Remove ``<Sentinel>``/``</Sentinel>`` tags and trim the result."""
    cleaned = (text or "").replace(f"<{sentinel}>", "").replace(f"</{sentinel}>", "")
    return cleaned.strip()
