"""
Provider registry.

Holds provider descriptors in registration order. Descriptors are immutable;
availability changes replace the descriptor rather than mutating it.
"""

import dataclasses
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional

from .pricing import to_decimal
from .request import TaskType


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of a provider's capabilities and price."""
    id: str
    capabilities: FrozenSet[TaskType]
    available: bool = True
    price_per_1k_tokens: Decimal = Decimal("0")
    offline: bool = False

    def __post_init__(self):
        """Validate descriptor fields."""
        if not self.id or not self.id.strip():
            raise ValueError("provider id is required and cannot be empty")
        if not isinstance(self.capabilities, frozenset):
            object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        object.__setattr__(self, "price_per_1k_tokens", to_decimal(self.price_per_1k_tokens))

    def can_serve(self, task_type: TaskType) -> bool:
        """True when the provider is available and supports the task type."""
        return self.available and task_type in self.capabilities


class ProviderRegistry:
    """Ordered, thread-safe set of provider descriptors."""

    def __init__(self, descriptors: Optional[Iterable[ProviderDescriptor]] = None):
        self._lock = threading.Lock()
        self._descriptors: Dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors or ():
            self.register(descriptor)

    def register(self, descriptor: ProviderDescriptor) -> None:
        """Add a provider. Registration order is the routing tie-break order.

        Raises:
            ValueError: If a provider with the same id is already registered
        """
        with self._lock:
            if descriptor.id in self._descriptors:
                raise ValueError(f"Provider already registered: {descriptor.id}")
            self._descriptors[descriptor.id] = descriptor

    def get(self, provider_id: str) -> Optional[ProviderDescriptor]:
        with self._lock:
            return self._descriptors.get(provider_id)

    def __contains__(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._descriptors

    def descriptors(self) -> List[ProviderDescriptor]:
        """All descriptors in registration order."""
        with self._lock:
            return list(self._descriptors.values())

    def set_available(self, provider_id: str, available: bool) -> ProviderDescriptor:
        """Replace a provider's descriptor with the given availability.

        Raises:
            KeyError: If the provider is not registered
        """
        with self._lock:
            if provider_id not in self._descriptors:
                raise KeyError(f"Unknown provider: {provider_id}")
            updated = dataclasses.replace(self._descriptors[provider_id], available=available)
            # dict preserves the original insertion slot on reassignment
            self._descriptors[provider_id] = updated
            return updated
