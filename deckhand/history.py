"""Conversation history with group-preserving truncation."""

import json
import math
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from deckhand.actions import ActionProtocol, ActionRequest, ToolMessage
from deckhand.config import get_config
from deckhand.exceptions import ContextError
from deckhand.llm import Message
from deckhand.logging import get_logger

log = get_logger(__name__)

ROLES = ("system", "user", "assistant", "tool")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ConversationTurn:
    """One entry in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    group_id: str | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    @property
    def request_call_ids(self) -> list[str]:
        """Call ids of the action requests an assistant turn carries."""
        if self.role != "assistant" or not self.tool_calls:
            return []
        return [str(tc.get("id")) for tc in self.tool_calls if tc.get("id")]

    def size_text(self) -> str:
        """Text used for size estimation."""
        if self.tool_calls:
            return self.content + json.dumps(self.tool_calls, ensure_ascii=False, default=str)
        return self.content

    def to_dict(self) -> dict[str, Any]:
        """Provider-style message dict."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = self.tool_calls
        if self.role == "tool":
            data["tool_call_id"] = self.call_id
            data["name"] = self.tool_name
        return data

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            tool_call_id=self.call_id,
            tool_name=self.tool_name,
            tool_calls=self.tool_calls,
        )


class ConversationHistory:
    """Ordered conversation log bounded by an approximate token budget.

    An assistant turn that carries action requests and the turns carrying
    their results form an atomic group: truncation drops the whole group or
    none of it.
    """

    def __init__(
        self,
        system: str = "",
        max_tokens: int | None = None,
        chars_per_token: int | None = None,
    ):
        cfg = get_config()
        self.max_tokens = int(max_tokens if max_tokens is not None else cfg.context.max_tokens)
        self.chars_per_token = max(1, int(chars_per_token or cfg.context.chars_per_token))
        self._turns: list[ConversationTurn] = []
        if system:
            self._turns.append(ConversationTurn(role="system", content=system))

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    @property
    def system(self) -> str:
        if self._turns and self._turns[0].role == "system":
            return self._turns[0].content
        return ""

    def estimate_tokens(self, text: str) -> int:
        """Approximate token count: characters scaled by a constant."""
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def approximate_tokens(self) -> int:
        return sum(self.estimate_tokens(turn.size_text()) for turn in self._turns)

    @property
    def context_usage(self) -> str:
        used = self.approximate_tokens()
        percent = (used / self.max_tokens * 100) if self.max_tokens else 0.0
        return f"Tokens: {used}/{self.max_tokens} ({percent:.1f}%)"

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        """Append a turn; a system turn is only accepted when none exists."""
        if turn.role not in ROLES:
            raise ContextError(f"Invalid role: {turn.role!r}")
        if turn.role == "system":
            if self.system or (self._turns and self._turns[0].role == "system"):
                raise ContextError("History already has a system turn; use update_system()")
            self._turns.insert(0, turn)
            return turn
        self._turns.append(turn)
        return turn

    def add(self, role: str, content: str, **fields: Any) -> ConversationTurn:
        return self.append(ConversationTurn(role=role, content=content, **fields))

    def add_action_requests(self, content: str, requests: Iterable[ActionRequest]) -> str:
        """Record the assistant turn that carries action requests.

        Returns the group id that result turns must join.
        """
        group_id = uuid.uuid4().hex
        structured = [r for r in requests if r.protocol is ActionProtocol.STRUCTURED]
        self.append(ConversationTurn(
            role="assistant",
            content=content or "",
            tool_calls=[r.to_tool_call() for r in structured] or None,
            group_id=group_id,
        ))
        return group_id

    def add_observation(self, observation: str | ToolMessage, group_id: str | None = None) -> ConversationTurn:
        """Record one action result as a tool turn (structured) or user turn (textual)."""
        if isinstance(observation, ToolMessage):
            return self.append(ConversationTurn(
                role="tool",
                content=observation.text,
                call_id=observation.call_id,
                tool_name=observation.name,
                group_id=group_id,
            ))
        return self.append(ConversationTurn(role="user", content=str(observation), group_id=group_id))

    def update_system(self, system: str) -> None:
        """Replace (or remove, when empty) the system turn."""
        if self._turns and self._turns[0].role == "system":
            self._turns.pop(0)
        if system:
            self._turns.insert(0, ConversationTurn(role="system", content=system))

    def all_turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def last_turn(self) -> ConversationTurn | None:
        return self._turns[-1] if self._turns else None

    def clear(self) -> None:
        """Drop everything except the system turn."""
        self._turns = [turn for turn in self._turns[:1] if turn.role == "system"]

    def format_for_api(self) -> list[dict[str, Any]]:
        return [turn.to_dict() for turn in self._turns]

    def to_messages(self) -> list[Message]:
        return [turn.to_message() for turn in self._turns]

    def _units(self, turns: list[ConversationTurn]) -> tuple[list[list[int]], set[int]]:
        """Partition non-system turn indexes into removal units.

        Returns the units in order of first appearance plus the indexes of
        orphaned tool turns (results with no earlier matching request). Call
        ids may repeat across groups, so a result first joins the earlier
        request turn of its own group and otherwise the newest earlier one.
        """
        call_owners: dict[str, list[tuple[str, int]]] = {}
        for idx, turn in enumerate(turns):
            for call_id in turn.request_call_ids:
                call_owners.setdefault(call_id, []).append((turn.group_id or f"calls:{idx}", idx))

        units: dict[str, list[int]] = {}
        orphans: set[int] = set()
        for idx, turn in enumerate(turns):
            if turn.role == "system":
                continue
            key: str | None = None
            if turn.role == "tool":
                earlier = [
                    owner for owner in call_owners.get(str(turn.call_id), []) if owner[1] < idx
                ] if turn.call_id else []
                if not earlier:
                    orphans.add(idx)
                    continue
                same_group = [owner for owner in earlier if owner[0] == turn.group_id]
                key = (same_group or earlier)[-1][0]
            elif turn.role == "assistant" and turn.request_call_ids:
                key = turn.group_id or f"calls:{idx}"
            elif turn.group_id:
                key = turn.group_id
            units.setdefault(key or f"turn:{idx}", []).append(idx)
        return list(units.values()), orphans

    def truncate(self, budget: int | None = None) -> int:
        """Drop the oldest turns until the approximate size fits ``budget``.

        Removal works on whole units (a single turn or an atomic group). The
        system turn and the newest unit are always kept. Returns the number
        of turns removed.
        """
        limit = self.max_tokens if budget is None else int(budget)
        turns = self._turns
        units, orphans = self._units(turns)

        removed: set[int] = set(orphans)
        if orphans:
            log.warning("Dropping orphaned tool results", count=len(orphans))

        size = sum(
            self.estimate_tokens(turn.size_text())
            for idx, turn in enumerate(turns)
            if idx not in removed
        )
        for unit in units[:-1]:
            if size <= limit:
                break
            removed.update(unit)
            size -= sum(self.estimate_tokens(turns[idx].size_text()) for idx in unit)

        if size > limit:
            log.warning("History still exceeds budget after truncation", tokens=size, budget=limit)
        if not removed:
            return 0
        self._turns = [turn for idx, turn in enumerate(turns) if idx not in removed]
        log.debug("Truncated history", removed=len(removed), tokens=size, budget=limit)
        return len(removed)

    def __str__(self) -> str:
        return "\n".join(json.dumps(turn.to_dict(), ensure_ascii=False, default=str) for turn in self._turns)
