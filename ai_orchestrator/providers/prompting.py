"""
Outbound prompt rendering and response post-processing.
"""

import re
from typing import Tuple

from ai_orchestrator.core.request import ContextKey, Request, TaskType

from .base import CodeBlock

TASK_INSTRUCTIONS = {
    TaskType.CODE_GENERATION: "Please provide clean, well-commented code following best practices.",
    TaskType.CODE_REVIEW: "Please review this code for bugs, performance issues, and best practices.",
    TaskType.DEBUGGING: "Please help identify and fix any issues in the code.",
    TaskType.EXPLANATION: "Please explain this code in simple, clear terms.",
    TaskType.REFACTORING: "Please refactor this code for better readability and performance.",
    TaskType.TESTING: "Please generate comprehensive tests for this code.",
    TaskType.DOCUMENTATION: "Please generate clear documentation for this code.",
}

_CONTEXT_LABELS = {
    ContextKey.PROJECT_TYPE: "Project Type",
    ContextKey.FRAMEWORK: "Framework",
    ContextKey.USER_LEVEL: "User Level",
    ContextKey.LANGUAGE: "Language",
    ContextKey.ERROR_MESSAGE: "Error",
}

_CODE_BLOCK_RE = re.compile(r"```(\w+)?[ \t]*\n(.*?)```", re.DOTALL)


def build_prompt(request: Request) -> str:
    """Render prompt, context tags and task instructions into one message.

    File content is appended last under its file name so the labelled
    context stays near the question.
    """
    parts = [request.prompt.strip()]

    labelled = [
        f"{_CONTEXT_LABELS[key]}: {value}"
        for key, value in request.context_tags
        if key in _CONTEXT_LABELS
    ]
    if labelled:
        parts.append("\n".join(labelled))

    file_content = request.context_value(ContextKey.FILE_CONTENT)
    if file_content:
        file_name = request.context_value(ContextKey.FILE_NAME) or "snippet"
        parts.append(f"Context File {file_name}:\n{file_content}")

    parts.append(TASK_INSTRUCTIONS[request.task_type])
    return "\n\n".join(parts)


def extract_code_blocks(content: str) -> Tuple[CodeBlock, ...]:
    """Return fenced code blocks in order of appearance."""
    return tuple(
        CodeBlock(language=match.group(1) or "text", code=match.group(2).strip())
        for match in _CODE_BLOCK_RE.finditer(content or "")
    )
