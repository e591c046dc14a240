"""
Token counting and estimation.

Providers report usage after the fact; pre-flight checks need an estimate
before any call is made.
"""

import math
from dataclasses import dataclass
from typing import Optional

from .request import Request

# Rough characters-per-token ratio for English text and source code
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a provider."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of text, rounding up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_request_tokens(request: Request, completion_tokens: int = 0) -> int:
    """Estimate tokens for a request: prompt plus context plus expected completion.

    Args:
        request: Request to estimate
        completion_tokens: Expected completion length

    Returns:
        Estimated total token count
    """
    if completion_tokens < 0:
        raise ValueError("completion_tokens cannot be negative")
    context_chars = sum(len(key.value) + len(value) for key, value in request.context_tags)
    prompt_tokens = estimate_tokens(request.prompt) + math.ceil(context_chars / CHARS_PER_TOKEN)
    return prompt_tokens + completion_tokens


def best_effort_total(tokens_used: Optional[int], fallback_estimate: int) -> int:
    """Use reported tokens when available, otherwise the pre-flight estimate."""
    if tokens_used is None or tokens_used < 0:
        return fallback_estimate
    return tokens_used
