"""
Cost guardrails and spend cap enforcement.

Every request is estimated and reserved against the billing-period budget
before it is queued, so no provider is ever called past the cap.

Enforcement Order:
1. Per-request max cost - Prevents catastrophic single-request costs
2. Budget cap - Spent plus outstanding reservations plus the estimate
3. Soft limit - Warns collaborators but allows the request
"""

import itertools
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from .exceptions import BudgetExceeded
from .logging import get_logger
from .pricing import ZERO, Number, calculate_cost, to_decimal
from .registry import ProviderDescriptor
from .request import Request
from .token_counter import estimate_request_tokens

logger = get_logger(__name__)


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = auto()  # Allow the request (no action)
    WARN = auto()   # Signal collaborators but allow request
    BLOCK = auto()  # Reject the request before it is queued


@dataclass(frozen=True)
class SpendState:
    """Snapshot of spend for the current billing period."""
    period: str
    spent: Decimal
    reserved: Decimal
    cap: Decimal

    @property
    def committed(self) -> Decimal:
        """Spent plus outstanding reservations."""
        return self.spent + self.reserved

    @property
    def remaining(self) -> Decimal:
        return max(self.cap - self.committed, ZERO)


@dataclass(frozen=True)
class CostEstimate:
    """Pre-flight estimate for one provider call."""
    provider_id: str
    tokens: int
    cost: Decimal


@dataclass(frozen=True)
class Reservation:
    """Budget held for a queued or in-flight call."""
    id: int
    period: str
    estimate: CostEstimate
    action: EnforcementAction = EnforcementAction.ALLOW


@dataclass(frozen=True)
class UsageCheck:
    """Budget utilisation report."""
    percent_used: float
    within_limits: bool
    warnings: List[str]


SoftLimitListener = Callable[[SpendState], None]


def current_period(now: Optional[datetime] = None) -> str:
    """Calendar-month billing period key, e.g. '2026-10'."""
    return (now or datetime.now()).strftime("%Y-%m")


class CostGuard:
    """Pre-flight cost estimation and spend cap enforcement.

    Zero-cost estimates (offline providers) are always allowed because they
    incur no spend.
    """

    def __init__(
        self,
        cap: Number,
        soft_limit_ratio: float = 0.8,
        max_cost_per_request: Optional[Number] = None,
        completion_tokens_estimate: int = 256,
        period: Optional[str] = None,
        spent: Number = ZERO,
    ):
        """Initialize the guard.

        Args:
            cap: Spend cap for the billing period
            soft_limit_ratio: Fraction of the cap that triggers a warning
            max_cost_per_request: Optional ceiling for a single estimate
            completion_tokens_estimate: Expected completion length used in estimates
            period: Billing period key (defaults to the current month)
            spent: Opening spend for the period, e.g. restored from the usage store

        Raises:
            ValueError: If any limit is invalid
        """
        self.cap = to_decimal(cap)
        if self.cap <= 0:
            raise ValueError("cap must be > 0")
        if not 0 < soft_limit_ratio <= 1:
            raise ValueError("soft_limit_ratio must be in (0, 1]")
        if completion_tokens_estimate < 0:
            raise ValueError("completion_tokens_estimate cannot be negative")

        self.soft_limit_ratio = soft_limit_ratio
        self.max_cost_per_request = (
            to_decimal(max_cost_per_request) if max_cost_per_request is not None else None
        )
        self.completion_tokens_estimate = completion_tokens_estimate

        self._lock = threading.Lock()
        self._period = period or current_period()
        self._spent = to_decimal(spent)
        self._reserved = ZERO
        self._reservations: Dict[int, Reservation] = {}
        self._ids = itertools.count(1)
        self._soft_limit_signalled = False
        self._listeners: List[SoftLimitListener] = []

    @property
    def soft_limit(self) -> Decimal:
        return (self.cap * Decimal(str(self.soft_limit_ratio))).quantize(Decimal("0.0001"))

    def add_soft_limit_listener(self, listener: SoftLimitListener) -> None:
        """Register a callback invoked once per period when the soft limit is crossed."""
        with self._lock:
            self._listeners.append(listener)

    def state(self) -> SpendState:
        with self._lock:
            return self._state_locked()

    def estimate(self, request: Request, descriptor: ProviderDescriptor) -> CostEstimate:
        """Estimate tokens and cost of sending request to a provider."""
        tokens = estimate_request_tokens(request, self.completion_tokens_estimate)
        return CostEstimate(
            provider_id=descriptor.id,
            tokens=tokens,
            cost=calculate_cost(descriptor.price_per_1k_tokens, tokens),
        )

    def reserve(self, estimate: CostEstimate) -> Reservation:
        """Atomically check the estimate against the cap and hold it.

        Returns:
            Reservation whose action is ALLOW or WARN

        Raises:
            BudgetExceeded: If the request must be blocked
        """
        with self._lock:
            action, message = self._evaluate(estimate)
            if action == EnforcementAction.BLOCK:
                logger.warning(
                    "budget_exceeded",
                    provider_id=estimate.provider_id,
                    estimate=str(estimate.cost),
                    spent=str(self._spent),
                    reserved=str(self._reserved),
                    cap=str(self.cap),
                    period=self._period,
                )
                raise BudgetExceeded(message, estimate.cost, self._spent, self.cap)

            reservation = Reservation(
                id=next(self._ids),
                period=self._period,
                estimate=estimate,
                action=action,
            )
            self._reservations[reservation.id] = reservation
            self._reserved += estimate.cost
            listeners = self._soft_limit_listeners_locked()

        self._notify(listeners)
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation without spending it (failed or skipped call)."""
        with self._lock:
            self._drop_reservation_locked(reservation)

    def settle(self, reservation: Reservation, actual_cost: Number) -> SpendState:
        """Release a reservation and add the actual cost to spend."""
        cost = to_decimal(actual_cost)
        with self._lock:
            self._drop_reservation_locked(reservation)
            self._spent += cost
            listeners = self._soft_limit_listeners_locked()
            state = self._state_locked()

        self._notify(listeners)
        return state

    def rollover(self, period: str) -> SpendState:
        """Start a new billing period. The only operation that resets spend.

        Outstanding reservations carry into the new period; they settle there.
        """
        if not period or not period.strip():
            raise ValueError("period is required and cannot be empty")
        with self._lock:
            previous = self._state_locked()
            self._period = period
            self._spent = ZERO
            self._soft_limit_signalled = False
        logger.info(
            "billing_period_rollover",
            previous_period=previous.period,
            previous_spent=str(previous.spent),
            period=period,
        )
        return self.state()

    def usage_check(self) -> UsageCheck:
        """Percent of cap committed and warnings past the soft limit."""
        state = self.state()
        percent = float(state.committed / self.cap * 100)
        warnings = []
        if state.committed >= self.soft_limit:
            warnings.append(f"Spend at {percent:.1f}% of ${self.cap:.2f} cap for {state.period}")
        return UsageCheck(
            percent_used=percent,
            within_limits=state.committed < self.cap,
            warnings=warnings,
        )

    def _evaluate(self, estimate: CostEstimate):
        action_taken = EnforcementAction.ALLOW
        message = ""

        def _update_action(new_action: EnforcementAction, new_message: str) -> None:
            nonlocal action_taken, message
            if new_action.value > action_taken.value:
                action_taken = new_action
                message = new_message

        if estimate.cost == 0:
            return action_taken, message

        # 1. Check per-request max cost
        if self.max_cost_per_request is not None and estimate.cost > self.max_cost_per_request:
            _update_action(
                EnforcementAction.BLOCK,
                f"Request estimate ${estimate.cost:.4f} exceeds maximum allowed "
                f"${self.max_cost_per_request:.4f} for {estimate.provider_id}",
            )

        # 2. Check budget cap
        projected = self._spent + self._reserved + estimate.cost
        if projected > self.cap:
            _update_action(
                EnforcementAction.BLOCK,
                f"Spend cap of ${self.cap:.2f} would be exceeded for {self._period}: "
                f"spent ${self._spent:.4f} + reserved ${self._reserved:.4f} "
                f"+ estimate ${estimate.cost:.4f}",
            )

        # 3. Soft limit
        if projected >= self.soft_limit:
            _update_action(
                EnforcementAction.WARN,
                f"Spend approaching cap: ${projected:.4f} of ${self.cap:.2f}",
            )

        return action_taken, message

    def _state_locked(self) -> SpendState:
        return SpendState(
            period=self._period,
            spent=self._spent,
            reserved=self._reserved,
            cap=self.cap,
        )

    def _drop_reservation_locked(self, reservation: Reservation) -> None:
        held = self._reservations.pop(reservation.id, None)
        if held is not None:
            self._reserved = max(self._reserved - held.estimate.cost, ZERO)

    def _soft_limit_listeners_locked(self) -> List[SoftLimitListener]:
        if self._soft_limit_signalled:
            return []
        if self._spent + self._reserved < self.soft_limit:
            return []
        self._soft_limit_signalled = True
        logger.warning(
            "soft_limit_crossed",
            period=self._period,
            spent=str(self._spent),
            reserved=str(self._reserved),
            soft_limit=str(self.soft_limit),
            cap=str(self.cap),
        )
        return list(self._listeners)

    def _notify(self, listeners: List[SoftLimitListener]) -> None:
        if not listeners:
            return
        state = self.state()
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("soft_limit_listener_failed")