"""
OpenAI-compatible chat completions adapter.

Works against any endpoint that speaks the chat completions API (OpenAI,
xAI Grok, self-hosted gateways). SDK retries are disabled; retry and
re-route decisions belong to the orchestrator.
"""

from typing import Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)

from ai_orchestrator.core.exceptions import ProviderError
from ai_orchestrator.core.logging import get_logger
from ai_orchestrator.core.request import Request
from ai_orchestrator.core.token_counter import TokenUsage

from .base import ProviderAdapter, ProviderResponse
from .prompting import build_prompt, extract_code_blocks

logger = get_logger(__name__)


class OpenAIAdapter(ProviderAdapter):
    """Remote adapter over the OpenAI SDK."""

    def __init__(
        self,
        provider_id: str,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        confidence_score: float = 0.9,
    ):
        """Initialize the adapter.

        Args:
            provider_id: Registry id of this provider (required)
            model: Model name (required)
            api_key: API key; the SDK falls back to OPENAI_API_KEY when None
            base_url: Optional endpoint for OpenAI-compatible services
            max_tokens: Completion ceiling per call
            temperature: Sampling temperature
            confidence_score: Confidence reported with successful responses

        Raises:
            ValueError: If provider_id or model is missing/empty
        """
        if not provider_id or not provider_id.strip():
            raise ValueError("provider_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.provider_id = provider_id
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.confidence_score = confidence_score
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    @property
    def client(self) -> OpenAI:
        # Built on first use; the SDK refuses to construct without a key
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key, base_url=self._base_url, max_retries=0)
        return self._client

    def submit(self, request: Request, timeout: float) -> ProviderResponse:
        """Create a chat completion for the request.

        Raises:
            ProviderError: transient for timeouts, connection failures, 429 and
                5xx; non-transient for other statuses and malformed responses
        """
        messages = [{"role": "user", "content": build_prompt(request)}]

        try:
            client = self.client
        except OpenAIError as exc:
            raise self._error(f"Client not configured: {exc}", False, "missing_api_key") from exc

        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=timeout,
            )
        except APITimeoutError as exc:
            raise self._error("Request timed out", True, "timeout") from exc
        except APIConnectionError as exc:
            raise self._error(f"Connection failed: {exc}", True, "connection") from exc
        except RateLimitError as exc:
            raise self._error("Rate limited", True, "rate_limited", exc.status_code) from exc
        except APIStatusError as exc:
            transient = exc.status_code >= 500
            reason = "server_error" if transient else "client_error"
            raise self._error(f"API error {exc.status_code}: {exc.message}", transient, reason, exc.status_code) from exc
        except OpenAIError as exc:
            raise self._error(f"SDK error: {exc}", False, "sdk_error") from exc

        if not response.choices:
            raise self._error("Response contained no choices", False, "malformed_response")

        content = response.choices[0].message.content or ""

        # Usage is best-effort; some compatible endpoints omit it
        tokens_used = None
        usage = response.usage
        if usage:
            tokens_used = TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            ).total_tokens

        return ProviderResponse(
            provider_id=self.provider_id,
            content=content,
            tokens_used=tokens_used,
            confidence_score=self.confidence_score,
            code_blocks=extract_code_blocks(content),
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def _error(
        self,
        message: str,
        transient: bool,
        reason: str,
        status_code: Optional[int] = None,
    ) -> ProviderError:
        logger.warning(
            "provider_call_failed",
            provider_id=self.provider_id,
            model=self.model,
            reason=reason,
            status_code=status_code,
            transient=transient,
        )
        return ProviderError(
            f"{self.provider_id}: {message}",
            provider_id=self.provider_id,
            transient=transient,
            reason=reason,
            status_code=status_code,
        )
