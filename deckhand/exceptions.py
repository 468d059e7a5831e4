"""Custom exceptions for Deckhand."""


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class LLMError(DeckhandError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ActionError(DeckhandError):
    """Action execution errors."""

    pass


class ActionExecutionError(ActionError):
    """Action execution failed."""

    def __init__(self, action_name: str, message: str):
        super().__init__(f"Action '{action_name}' failed: {message}")
        self.action_name = action_name


class ActionNotFoundError(ActionError):
    """Action not found in any registry."""

    def __init__(self, action_name: str):
        super().__init__(f"Action not found: {action_name}")
        self.action_name = action_name


class ActionRegistrationError(ActionError):
    """Invalid action registration."""

    pass


class ContextError(DeckhandError):
    """Conversation history errors."""

    pass
