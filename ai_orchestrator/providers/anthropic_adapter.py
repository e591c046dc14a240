"""
Anthropic Messages API adapter over httpx.

Environment configuration is resolved by the config layer; this module only
speaks HTTP.
"""

from typing import Any, Dict, Optional

import httpx

from ai_orchestrator.core.exceptions import ProviderError
from ai_orchestrator.core.logging import get_logger
from ai_orchestrator.core.request import Request

from .base import ProviderAdapter, ProviderResponse
from .prompting import build_prompt, extract_code_blocks

logger = get_logger(__name__)

ANTHROPIC_API_BASE = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    """Remote adapter for the Messages API."""

    def __init__(
        self,
        provider_id: str,
        model: str,
        api_key: Optional[str],
        base_url: str = ANTHROPIC_API_BASE,
        max_tokens: int = 1024,
        confidence_score: float = 0.9,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not provider_id or not provider_id.strip():
            raise ValueError("provider_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.provider_id = provider_id
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.confidence_score = confidence_score
        self._client = httpx.Client(base_url=base_url.rstrip("/"), transport=transport)

    def submit(self, request: Request, timeout: float) -> ProviderResponse:
        """POST /v1/messages and translate the result.

        Raises:
            ProviderError: transient for timeouts, transport errors, 429 and
                5xx; non-transient for other 4xx and malformed bodies
        """
        if not self.api_key:
            # No key configured: treat as unavailable and let the caller re-route
            raise self._error("API key not configured", False, "missing_api_key")

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": build_prompt(request)}],
        }

        try:
            response = self._client.post("/v1/messages", headers=headers, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise self._error(f"Request timed out: {exc}", True, "timeout") from exc
        except httpx.TransportError as exc:
            raise self._error(f"Transport error: {exc}", True, "connection") from exc

        status = response.status_code
        if status == 429:
            raise self._error("Rate limited", True, "rate_limited", status)
        if status >= 500:
            raise self._error(f"Server error {status}", True, "server_error", status)
        if status >= 400:
            raise self._error(f"Client error {status}: {response.text[:200]}", False, "client_error", status)

        try:
            data = response.json()
            blocks = data["content"]
            content = "".join(
                block.get("text", "") for block in blocks if block.get("type") == "text"
            )
            usage = data.get("usage") or {}
            tokens_used = None
            if usage:
                tokens_used = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise self._error(f"Malformed response body: {exc}", False, "malformed_response", status) from exc

        return ProviderResponse(
            provider_id=self.provider_id,
            content=content,
            tokens_used=tokens_used,
            confidence_score=self.confidence_score,
            code_blocks=extract_code_blocks(content),
        )

    def close(self) -> None:
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
