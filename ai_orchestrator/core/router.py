"""
Provider routing.

Resolution order:
1. Explicit per-request override, if registered, available and capable
2. Policy table entry for the task type, if available and capable
3. First available, capable remote provider in registration order
4. First available, capable offline (fallback) provider
"""

from typing import Collection, Dict, Mapping, Optional

from .exceptions import ProviderUnavailable
from .logging import get_logger
from .registry import ProviderDescriptor, ProviderRegistry
from .request import TaskType

logger = get_logger(__name__)


class Router:
    """Maps (task type, override) to a provider descriptor."""

    def __init__(
        self,
        registry: ProviderRegistry,
        policy: Optional[Mapping[TaskType, str]] = None
    ):
        self.registry = registry
        self.policy: Dict[TaskType, str] = dict(policy or {})

    def resolve(
        self,
        task_type: TaskType,
        override: Optional[str] = None,
        exclude: Collection[str] = (),
    ) -> ProviderDescriptor:
        """Select the provider that should serve a task.

        Args:
            task_type: Task being routed
            override: Optional provider id forced by the caller
            exclude: Provider ids to skip (already tried for this request)

        Returns:
            Descriptor of the selected provider

        Raises:
            ProviderUnavailable: If no provider, including the fallback, can serve
        """
        if override is not None and override not in exclude:
            descriptor = self.registry.get(override)
            if descriptor is not None and descriptor.can_serve(task_type):
                return descriptor
            logger.info(
                "provider_override_ignored",
                provider_id=override,
                task_type=task_type.value,
                registered=descriptor is not None,
            )

        preferred = self.policy.get(task_type)
        if preferred is not None and preferred not in exclude:
            descriptor = self.registry.get(preferred)
            if descriptor is not None and descriptor.can_serve(task_type):
                return descriptor

        candidates = [
            d for d in self.registry.descriptors()
            if d.id not in exclude and d.can_serve(task_type)
        ]
        for descriptor in candidates:
            if not descriptor.offline:
                return descriptor
        for descriptor in candidates:
            if descriptor.offline:
                return descriptor

        raise ProviderUnavailable(
            f"No available provider can serve task type '{task_type.value}'",
            task_type=task_type.value,
        )
