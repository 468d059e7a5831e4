"""Deckhand - an asyncio agent runtime that turns model output into executed actions."""

__version__ = "0.1.0"

from deckhand.actions import ActionProtocol, ActionRequest, ActionResult, ActionState, ToolMessage
from deckhand.agent import Agent, AgentState
from deckhand.config import Config, LoggingConfig
from deckhand.execution import ActionContext, ExecutionEngine, Observation
from deckhand.extractor import extract, extract_structured, extract_textual
from deckhand.history import ConversationHistory, ConversationTurn
from deckhand.logging import configure_logging, get_logger
from deckhand.processes import BackgroundProcessSupervisor

__all__ = [
    "ActionContext",
    "ActionProtocol",
    "ActionRequest",
    "ActionResult",
    "ActionState",
    "Agent",
    "AgentState",
    "BackgroundProcessSupervisor",
    "Config",
    "LoggingConfig",
    "ConversationHistory",
    "ConversationTurn",
    "ExecutionEngine",
    "Observation",
    "ToolMessage",
    "__version__",
    "configure_logging",
    "extract",
    "extract_structured",
    "extract_textual",
    "get_logger",
]
