"""
Token usage reported by the generation provider.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Holds the exact counts from the provider's usage metadata; nothing here
    is estimated from text length.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate token counts are not negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens
