"""
Token counting and usage tracking.

Holds the four token categories reported by the assistant's usage block.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.
    
    Contains exact token counts as reported in the log, split into the
    four billable categories.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    
    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens", "cache_write_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
        )
