"""
Tests for cost guardrail enforcement.
"""
import threading
from datetime import datetime
from decimal import Decimal

import pytest

from ai_orchestrator.core.exceptions import BudgetExceeded
from ai_orchestrator.core.guardrails import (
    CostEstimate,
    CostGuard,
    EnforcementAction,
    current_period,
)
from ai_orchestrator.core.registry import ProviderDescriptor
from ai_orchestrator.core.request import RequestNormalizer, TaskType


def estimate(cost, provider_id="remote"):
    return CostEstimate(provider_id=provider_id, tokens=100, cost=Decimal(str(cost)))


class TestBudgetCap:
    """Spend cap enforcement."""

    def test_estimate_past_cap_blocked(self):
        """$10 cap at 95% spent rejects a $1 estimate."""
        guard = CostGuard(cap=10, spent="9.50", period="2026-10")
        with pytest.raises(BudgetExceeded) as excinfo:
            guard.reserve(estimate(1))

        assert excinfo.value.estimate == Decimal("1")
        assert excinfo.value.spent == Decimal("9.50")
        assert excinfo.value.cap == Decimal("10")
        assert "Spend cap" in str(excinfo.value)
        assert guard.state().reserved == Decimal("0")

    def test_estimate_reaching_cap_exactly_allowed(self):
        guard = CostGuard(cap=10, spent="9", period="2026-10")
        reservation = guard.reserve(estimate(1))
        assert reservation.action == EnforcementAction.WARN

    def test_reservations_count_against_cap(self):
        guard = CostGuard(cap=10, period="2026-10")
        guard.reserve(estimate(6))
        with pytest.raises(BudgetExceeded):
            guard.reserve(estimate(5))

    def test_release_frees_reservation(self):
        guard = CostGuard(cap=10, period="2026-10")
        reservation = guard.reserve(estimate(6))
        guard.release(reservation)
        guard.reserve(estimate(6))
        assert guard.state().reserved == Decimal("6")

    def test_zero_cost_always_allowed(self):
        """Offline providers cost nothing and are never blocked."""
        guard = CostGuard(cap=10, spent=10, period="2026-10")
        reservation = guard.reserve(estimate(0, "local"))
        assert reservation.action == EnforcementAction.ALLOW

    def test_max_cost_per_request(self):
        guard = CostGuard(cap=100, max_cost_per_request="0.5", period="2026-10")
        with pytest.raises(BudgetExceeded) as excinfo:
            guard.reserve(estimate(1))
        assert "exceeds maximum allowed" in str(excinfo.value)

    def test_concurrent_reservations_never_exceed_cap(self):
        guard = CostGuard(cap=10, period="2026-10")
        granted = []
        lock = threading.Lock()

        def reserve():
            try:
                guard.reserve(estimate(1))
            except BudgetExceeded:
                return
            with lock:
                granted.append(1)

        threads = [threading.Thread(target=reserve) for _ in range(25)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(granted) == 10
        assert guard.state().committed == Decimal("10")


class TestSettlement:
    """Spend only grows within a period."""

    def test_settle_moves_reservation_to_spend(self):
        guard = CostGuard(cap=10, period="2026-10")
        reservation = guard.reserve(estimate(2))
        state = guard.settle(reservation, "1.5")
        assert state.spent == Decimal("1.5")
        assert state.reserved == Decimal("0")
        assert state.remaining == Decimal("8.5")

    def test_spend_is_monotonic(self):
        guard = CostGuard(cap=10, period="2026-10")
        previous = Decimal("0")
        for cost in ("0.1", "0", "0.25"):
            spent = guard.settle(guard.reserve(estimate(cost)), cost).spent
            assert spent >= previous
            previous = spent

    def test_rollover_resets_spend(self):
        guard = CostGuard(cap=10, spent=9, period="2026-10")
        state = guard.rollover("2026-11")
        assert state.period == "2026-11"
        assert state.spent == Decimal("0")
        guard.reserve(estimate(5))

    def test_rollover_requires_period(self):
        with pytest.raises(ValueError):
            CostGuard(cap=10).rollover("")


class TestSoftLimit:
    """Soft limit signals listeners once per period."""

    def test_listener_called_once(self):
        guard = CostGuard(cap=10, soft_limit_ratio=0.5, period="2026-10")
        seen = []
        guard.add_soft_limit_listener(seen.append)

        guard.reserve(estimate(4))
        assert seen == []
        reservation = guard.reserve(estimate(2))
        assert reservation.action == EnforcementAction.WARN
        guard.reserve(estimate(1))

        assert len(seen) == 1
        assert seen[0].period == "2026-10"

    def test_listener_rearmed_after_rollover(self):
        guard = CostGuard(cap=10, soft_limit_ratio=0.5, period="2026-10")
        seen = []
        guard.add_soft_limit_listener(seen.append)
        guard.settle(guard.reserve(estimate(6)), 6)
        guard.rollover("2026-11")
        guard.settle(guard.reserve(estimate(6)), 6)
        assert [s.period for s in seen] == ["2026-10", "2026-11"]

    def test_failing_listener_does_not_block_reservation(self):
        guard = CostGuard(cap=10, soft_limit_ratio=0.1, period="2026-10")

        def broken(state):
            raise RuntimeError("listener down")

        guard.add_soft_limit_listener(broken)
        reservation = guard.reserve(estimate(2))
        assert reservation.action == EnforcementAction.WARN

    def test_usage_check(self):
        guard = CostGuard(cap=10, spent=9, period="2026-10")
        check = guard.usage_check()
        assert check.percent_used == pytest.approx(90.0)
        assert check.within_limits is True
        assert len(check.warnings) == 1


class TestEstimate:
    """Pre-flight estimation."""

    def test_estimate_uses_provider_price(self):
        guard = CostGuard(cap=10, completion_tokens_estimate=96)
        request, _ = RequestNormalizer().normalize("explanation", "a" * 16)
        descriptor = ProviderDescriptor(
            id="remote", capabilities={TaskType.EXPLANATION}, price_per_1k_tokens="0.01"
        )
        result = guard.estimate(request, descriptor)
        assert result.tokens == 100
        assert result.cost == Decimal("0.0010")
        assert result.provider_id == "remote"

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            CostGuard(cap=0)
        with pytest.raises(ValueError):
            CostGuard(cap=10, soft_limit_ratio=1.5)

    def test_current_period_format(self):
        assert current_period(datetime(2026, 3, 7)) == "2026-03"
