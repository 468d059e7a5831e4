"""Action request/result records shared by the extractor, engine and history."""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from deckhand.instructions import get_instruction_loader

_SENTINEL_NORMALIZE_RE = re.compile(r"[\s_\-.]+")

# Actions whose output is fed back verbatim instead of in observation form.
_VERBATIM_PREFIXES = ("ThinkTool.",)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_call_id() -> str:
    """Return a process-unique call identifier."""
    return uuid.uuid4().hex


def normalize_sentinel(value: str) -> str:
    """Fold case and separators so "Task Completion" equals "TaskCompletion"."""
    return _SENTINEL_NORMALIZE_RE.sub("", str(value or "")).lower()


class ActionProtocol(str, Enum):
    """Wire shape an action request arrived in."""

    TEXTUAL = "textual"
    STRUCTURED = "structured"


class ActionState(str, Enum):
    """Execution state of an action result."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[ActionState, set[ActionState]] = {
    ActionState.PENDING: {ActionState.RUNNING, ActionState.FAILED},
    ActionState.RUNNING: {ActionState.SUCCESS, ActionState.FAILED},
    ActionState.SUCCESS: set(),
    ActionState.FAILED: set(),
}


@dataclass(frozen=True)
class ToolMessage:
    """Structured observation paired with a structured-protocol request."""

    call_id: str
    name: str
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": self.call_id,
            "name": self.name,
            "content": self.text,
        }


@dataclass(frozen=True)
class ActionRequest:
    """One action requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=new_call_id)
    protocol: ActionProtocol = ActionProtocol.TEXTUAL
    extraction_ok: bool = True
    failure_reason: str | None = None
    raw_text: str = ""

    def __post_init__(self) -> None:
        if self.extraction_ok:
            if self.failure_reason:
                raise ValueError("failure_reason is only allowed on failed extractions")
            return
        if self.arguments:
            raise ValueError("Failed extraction must not carry arguments")
        if not str(self.failure_reason or "").strip():
            raise ValueError("Failed extraction requires a failure_reason")

    @classmethod
    def failed(
        cls,
        name: str,
        reason: str,
        *,
        protocol: ActionProtocol = ActionProtocol.TEXTUAL,
        raw_text: str = "",
        call_id: str | None = None,
    ) -> "ActionRequest":
        """Build a request whose extraction failed."""
        return cls(
            name=name,
            arguments={},
            call_id=call_id or new_call_id(),
            protocol=protocol,
            extraction_ok=False,
            failure_reason=reason or "Unknown reason",
            raw_text=raw_text,
        )

    def is_completion(self, sentinel: str) -> bool:
        """Whether this request names the reserved completion sentinel."""
        return normalize_sentinel(self.name) == normalize_sentinel(sentinel)

    def describe(self, max_chars: int = 200) -> str:
        """Short ``Name(args)`` summary for logs."""
        try:
            args_text = json.dumps(self.arguments, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            args_text = str(self.arguments)
        if len(args_text) > max_chars:
            args_text = args_text[: max_chars // 2] + f" ...(truncated {len(args_text)} chars)"
        return f"{self.name}({args_text})"

    def to_tool_call(self) -> dict[str, Any]:
        """Provider-style tool call entry for an assistant turn."""
        if self.extraction_ok:
            arguments = json.dumps(self.arguments, ensure_ascii=False, default=str)
        else:
            arguments = self.raw_text
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }


@dataclass
class ActionResult:
    """Outcome of running one ActionRequest."""

    request: ActionRequest
    state: ActionState = ActionState.PENDING
    content: str | ToolMessage | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_finished(self) -> bool:
        return self.state in (ActionState.SUCCESS, ActionState.FAILED)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def _transition(self, target: ActionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal action state transition {self.state.value} -> {target.value}"
            )
        self.state = target

    def mark_running(self) -> None:
        self._transition(ActionState.RUNNING)
        self.started_at = _utcnow()

    def succeed(self, content: str | ToolMessage) -> None:
        self._transition(ActionState.SUCCESS)
        self.content = content
        self.finished_at = _utcnow()

    def fail(self, reason: str) -> None:
        self._transition(ActionState.FAILED)
        self.content = reason
        self.finished_at = _utcnow()

    @property
    def text(self) -> str:
        """Plain text of the result content."""
        if isinstance(self.content, ToolMessage):
            return self.content.text
        return str(self.content or "")

    def observation(self) -> str | ToolMessage:
        """Projection of this result handed to the conversation history."""
        request = self.request
        if request.protocol is ActionProtocol.STRUCTURED:
            text = self.text.strip() or "No execution result found."
            return ToolMessage(call_id=request.call_id, name=request.name, text=text)

        if not request.extraction_ok:
            return f"Toolcall {request.name} failed to extract: {request.failure_reason}"

        if request.name.startswith(_VERBATIM_PREFIXES):
            return self.text.strip() or "No thinking result found."

        if request.name.startswith("FileEditor.write"):
            description = f"{request.name}({request.arguments.get('path')})"
        else:
            description = request.describe(max_chars=2000)
        return get_instruction_loader().render(
            "observation.md",
            description=description,
            content=self.text.strip() or "None",
        )


def with_note(observation: str | ToolMessage, note: str) -> str | ToolMessage:
    """Append advisory text to an observation without changing its shape."""
    note = (note or "").strip()
    if not note:
        return observation
    if isinstance(observation, ToolMessage):
        return replace(observation, text=f"{observation.text}\n\n{note}")
    return f"{observation}\n\n{note}"
