"""
Request normalization and fingerprinting.

Turns a caller's task, prompt and context tags into an immutable Request and
a deterministic Fingerprint used as the cache and single-flight key.
"""

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple, Union

from .exceptions import ValidationError


class TaskType(Enum):
    """Kinds of AI task a caller may request."""
    CODE_GENERATION = "code-generation"
    CODE_REVIEW = "code-review"
    DEBUGGING = "debugging"
    EXPLANATION = "explanation"
    REFACTORING = "refactoring"
    TESTING = "testing"
    DOCUMENTATION = "documentation"


class ContextKey(Enum):
    """Fixed vocabulary of context tag keys."""
    PROJECT_TYPE = "project_type"
    FRAMEWORK = "framework"
    USER_LEVEL = "user_level"
    LANGUAGE = "language"
    FILE_NAME = "file_name"
    FILE_CONTENT = "file_content"
    ERROR_MESSAGE = "error_message"


ContextTag = Tuple[ContextKey, str]
ContextInput = Union[Mapping[str, str], Iterable[Tuple[Union[str, ContextKey], str]], None]


@dataclass(frozen=True)
class Fingerprint:
    """Deterministic identifier of a semantically-equivalent request."""
    digest: str

    def __str__(self) -> str:
        return self.digest

    @property
    def short(self) -> str:
        """First 12 hex characters, for log lines."""
        return self.digest[:12]


@dataclass(frozen=True)
class Request:
    """Canonical, immutable AI task request.

    context_tags are stable-sorted by (key, value) so the same tags in any
    submission order produce an identical Request body.
    """
    task_type: TaskType
    prompt: str
    context_tags: Tuple[ContextTag, ...] = ()
    provider_override: Optional[str] = None
    deadline: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def context_value(self, key: ContextKey) -> Optional[str]:
        """Return the first value tagged with key, if any."""
        for tag_key, value in self.context_tags:
            if tag_key == key:
                return value
        return None


def parse_task_type(task_type: Union[TaskType, str]) -> TaskType:
    """Accept a TaskType or its string value.

    Raises:
        ValidationError: If the task type is not recognised
    """
    if isinstance(task_type, TaskType):
        return task_type
    if isinstance(task_type, str):
        try:
            return TaskType(task_type.strip().lower())
        except ValueError:
            pass
    valid = [t.value for t in TaskType]
    raise ValidationError(f"Unknown task type: {task_type!r}. Must be one of: {valid}")


def normalize_prompt(prompt: str) -> str:
    """Collapse whitespace runs and strip the ends."""
    return " ".join(prompt.split())


class RequestNormalizer:
    """Builds canonical Requests and their Fingerprints.

    provider_override is left out of the fingerprint unless
    fingerprint_includes_override is set, so forcing a provider does not
    fragment the cache by default.
    """

    def __init__(self, fingerprint_includes_override: bool = False, clock=time.monotonic):
        self.fingerprint_includes_override = fingerprint_includes_override
        self._clock = clock

    def normalize(
        self,
        task_type: Union[TaskType, str],
        prompt: str,
        context_tags: ContextInput = None,
        provider_override: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Request, Fingerprint]:
        """Validate caller input and produce (Request, Fingerprint).

        Args:
            task_type: TaskType or its string value
            prompt: Free-form prompt text (required, non-blank)
            context_tags: Mapping or iterable of (key, value) pairs
            provider_override: Optional provider id to force
            timeout: Optional total deadline in seconds, measured from now

        Returns:
            Tuple of the canonical Request and its Fingerprint

        Raises:
            ValidationError: If any input is malformed
        """
        resolved_task = parse_task_type(task_type)

        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("prompt is required and cannot be empty")

        if provider_override is not None:
            if not isinstance(provider_override, str) or not provider_override.strip():
                raise ValidationError("provider_override must be a non-empty string")
            provider_override = provider_override.strip()

        deadline = None
        if timeout is not None:
            if timeout <= 0:
                raise ValidationError("timeout must be > 0")
            deadline = self._clock() + timeout

        tags = _canonical_tags(context_tags)
        request = Request(
            task_type=resolved_task,
            prompt=prompt,
            context_tags=tags,
            provider_override=provider_override,
            deadline=deadline,
        )
        return request, self.fingerprint(request)

    def fingerprint(self, request: Request) -> Fingerprint:
        """Content hash over task type, normalized prompt and sorted tags."""
        payload = {
            "task": request.task_type.value,
            "prompt": normalize_prompt(request.prompt),
            "context": [[key.value, value] for key, value in request.context_tags],
        }
        if self.fingerprint_includes_override:
            payload["override"] = request.provider_override
        canonical = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return Fingerprint(hashlib.sha256(canonical.encode("utf-8")).hexdigest())


def _canonical_tags(context_tags: ContextInput) -> Tuple[ContextTag, ...]:
    if context_tags is None:
        return ()

    if isinstance(context_tags, Mapping):
        pairs = list(context_tags.items())
    else:
        try:
            pairs = [tuple(pair) for pair in context_tags]
        except TypeError:
            raise ValidationError("context_tags must be a mapping or an iterable of (key, value) pairs")

    tags = set()
    for pair in pairs:
        if len(pair) != 2:
            raise ValidationError(f"context tag must be a (key, value) pair, got {pair!r}")
        raw_key, value = pair
        key = _parse_context_key(raw_key)
        if not isinstance(value, str):
            raise ValidationError(f"context value for '{key.value}' must be a string")
        tags.add((key, value))

    return tuple(sorted(tags, key=lambda tag: (tag[0].value, tag[1])))


def _parse_context_key(raw_key) -> ContextKey:
    if isinstance(raw_key, ContextKey):
        return raw_key
    if isinstance(raw_key, str):
        try:
            return ContextKey(raw_key.strip().lower())
        except ValueError:
            pass
    valid = [k.value for k in ContextKey]
    raise ValidationError(f"Unknown context key: {raw_key!r}. Must be one of: {valid}")
