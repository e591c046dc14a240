"""
Provider adapter contract.

Every backend, remote or on-device, is reached through submit(request,
timeout). Adapters translate their own transport failures into
ProviderError; nothing else may escape.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from ai_orchestrator.core.request import Request


@dataclass(frozen=True)
class CodeBlock:
    """Fenced code block found in a response."""
    language: str
    code: str


@dataclass(frozen=True)
class ProviderResponse:
    """Result of a single provider call."""
    provider_id: str
    content: str
    tokens_used: Optional[int] = None  # best-effort, as reported by the backend
    confidence_score: float = 1.0
    code_blocks: Tuple[CodeBlock, ...] = ()

    def __post_init__(self):
        """Validate response fields."""
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValueError("confidence_score must be between 0 and 1")
        if self.tokens_used is not None and self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")


class ProviderAdapter(ABC):
    """Capability interface over one AI backend."""

    provider_id: str

    @abstractmethod
    def submit(self, request: Request, timeout: float) -> ProviderResponse:
        """Send a request to the backend.

        Args:
            request: Canonical request
            timeout: Seconds allowed for this call

        Returns:
            ProviderResponse

        Raises:
            ProviderError: On any transport or remote failure
        """

    def close(self) -> None:
        """Release network resources. Default is a no-op."""
