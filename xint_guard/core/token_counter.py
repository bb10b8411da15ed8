"""
Token counting for xAI chat completions.

Exact counts come from the API's usage block; before a call only a rough
estimate from prompt length is available.
"""

from dataclasses import dataclass
from typing import Dict, List

# Rough characters-per-token ratio for English prompts
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_prompt_tokens(messages: List[Dict[str, str]]) -> int:
    """Upper-leaning token estimate for a list of chat messages."""
    chars = sum(len(str(m.get("content", ""))) for m in messages or [])
    return -(-chars // CHARS_PER_TOKEN)  # ceiling division
