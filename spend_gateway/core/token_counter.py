"""
Token counting and usage tracking.

Holds provider-reported token counts and a rough pre-flight estimate.
"""

import math
from dataclasses import dataclass

# Roughly four characters per token across the supported tokenizers
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    tokens_in: int = 0
    tokens_out: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.tokens_in + self.tokens_out

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            tokens_in=self.tokens_in + other.tokens_in,
            tokens_out=self.tokens_out + other.tokens_out,
        )


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` before sending it."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
