"""
Exception types raised by the engine.

Soft conversational outcomes (budget or quota exhausted, failed tool calls)
are returned as values; only the conditions below are raised.
"""


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """Raised when the engine cannot run at all, e.g. provider credentials are absent."""


class CircuitOpenError(EngineError):
    """Raised without calling the provider while the circuit breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit '{name}' is open; retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class DeadlineExceededError(EngineError, TimeoutError):
    """Raised when a request deadline elapses before the provider answered."""


class StructuredResponseError(EngineError):
    """Raised when a structured (JSON) provider response cannot be parsed."""

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text


class BudgetExceededError(EngineError):
    """Raised by single-call operations (descriptions, suggestions, image edits)
    when budget admission rejects the request."""

    def __init__(self, shop_id: str, reason: str):
        super().__init__(reason)
        self.shop_id = shop_id
        self.reason = reason
