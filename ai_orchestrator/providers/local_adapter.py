"""
On-device fallback adapter.

Provider of last resort: no network dependency, templated content, lower
confidence. It is selected explicitly by the router like any other provider.
"""

from ai_orchestrator.core.request import ContextKey, Request, TaskType
from ai_orchestrator.core.token_counter import estimate_tokens

from .base import ProviderAdapter, ProviderResponse
from .prompting import extract_code_blocks

LOCAL_CONFIDENCE = 0.5

_TEMPLATES = {
    TaskType.CODE_GENERATION: (
        "Offline draft for: {subject}\n\n"
        "```{language}\n"
        "// {subject}\n"
        "```\n\n"
        "Generated on-device without a remote model. Review before use."
    ),
    TaskType.CODE_REVIEW: (
        "Offline review checklist for: {subject}\n"
        "- Check error handling on every external call\n"
        "- Check inputs are validated at the boundary\n"
        "- Check names describe intent\n"
        "A remote provider was unavailable; run the review again for detailed feedback."
    ),
    TaskType.DEBUGGING: (
        "Offline debugging steps for: {subject}\n"
        "1. Reproduce the failure with the smallest input\n"
        "2. Read the full error message and stack trace{error_hint}\n"
        "3. Bisect recent changes around the failing line"
    ),
    TaskType.EXPLANATION: (
        "Offline summary: {subject}\n"
        "This explanation was produced on-device and may be incomplete."
    ),
    TaskType.REFACTORING: (
        "Offline refactoring suggestions for: {subject}\n"
        "- Extract repeated logic into functions\n"
        "- Replace magic values with named constants\n"
        "- Keep functions short and single-purpose"
    ),
    TaskType.TESTING: (
        "Offline test outline for: {subject}\n"
        "- Happy path\n"
        "- Empty and boundary inputs\n"
        "- Error paths"
    ),
    TaskType.DOCUMENTATION: (
        "Offline documentation stub for: {subject}\n\n"
        "## Overview\n\n## Usage\n\n## Parameters\n"
    ),
}


class LocalFallbackAdapter(ProviderAdapter):
    """Always-available templated backend."""

    def __init__(self, provider_id: str = "local", confidence_score: float = LOCAL_CONFIDENCE):
        if not provider_id or not provider_id.strip():
            raise ValueError("provider_id is required and cannot be empty")
        self.provider_id = provider_id
        self.confidence_score = confidence_score

    def submit(self, request: Request, timeout: float) -> ProviderResponse:
        subject = " ".join(request.prompt.split())
        if len(subject) > 80:
            subject = subject[:77] + "..."

        error = request.context_value(ContextKey.ERROR_MESSAGE)
        content = _TEMPLATES[request.task_type].format(
            subject=subject,
            language=request.context_value(ContextKey.LANGUAGE) or "text",
            error_hint=f" ({error})" if error else "",
        )

        return ProviderResponse(
            provider_id=self.provider_id,
            content=content,
            tokens_used=estimate_tokens(request.prompt) + estimate_tokens(content),
            confidence_score=self.confidence_score,
            code_blocks=extract_code_blocks(content),
        )
