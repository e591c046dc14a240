"""
End-to-end tests for request orchestration.

Adapters are scripted in-process; threading.Event gates hold a provider call
open so concurrent callers can be lined up against it.
"""

import threading
import time
from decimal import Decimal

import pytest

from ai_orchestrator.config.loader import (
    BudgetConfig,
    OrchestratorConfig,
    ProviderKind,
    ProviderSettings,
    default_config,
)
from ai_orchestrator.core.exceptions import (
    Backpressure,
    BudgetExceeded,
    ProviderError,
    ProviderUnavailable,
    RequestCancelled,
    RequestTimeout,
    ValidationError,
)
from ai_orchestrator.core.guardrails import CostGuard
from ai_orchestrator.core.orchestrator import Orchestrator, Outcome
from ai_orchestrator.core.registry import ProviderDescriptor, ProviderRegistry
from ai_orchestrator.core.request import ContextKey, TaskType
from ai_orchestrator.core.router import Router
from ai_orchestrator.providers.base import ProviderAdapter, ProviderResponse
from ai_orchestrator.providers.local_adapter import LocalFallbackAdapter
from ai_orchestrator.storage.models import UsageOutcome
from ai_orchestrator.storage.repository import (
    UsageRepository,
    initialize_schema,
    persist_ledger_snapshot,
)

ALL_TASKS = frozenset(TaskType)


class ScriptedAdapter(ProviderAdapter):
    """Adapter that plays back a script of errors before answering."""

    def __init__(self, provider_id, script=None, gate=None, tokens=100):
        self.provider_id = provider_id
        self.script = list(script or [])
        self.gate = gate
        self.tokens = tokens
        self.calls = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def submit(self, request, timeout):
        with self._lock:
            self.calls.append(request.prompt)
            step = self.script.pop(0) if self.script else None
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if isinstance(step, Exception):
            raise step
        return ProviderResponse(
            provider_id=self.provider_id,
            content=f"{self.provider_id} says: {request.prompt}",
            tokens_used=self.tokens,
            confidence_score=0.9,
        )


def transient(provider_id):
    return ProviderError(f"{provider_id} busy", provider_id=provider_id, transient=True, reason="server_error")


def fatal(provider_id):
    return ProviderError(f"{provider_id} refused", provider_id=provider_id, transient=False, reason="client_error")


def descriptor(provider_id, price="0.01", capabilities=ALL_TASKS, offline=False):
    return ProviderDescriptor(
        id=provider_id,
        capabilities=capabilities,
        price_per_1k_tokens=price,
        offline=offline,
    )


class OrchestratorTestCase:
    """Builds orchestrators and stops them after each test."""

    def setup_method(self):
        self.orchestrators = []
        self.gate = threading.Event()

    def teardown_method(self):
        self.gate.set()
        for orchestrator in self.orchestrators:
            orchestrator.stop(drain=False, timeout=5)

    def build(self, descriptors, adapters, cap=10, spent=0, completion_tokens=96, routing=None, **kwargs):
        kwargs.setdefault("retry_backoff", 0)
        registry = ProviderRegistry(descriptors)
        if routing is not None:
            kwargs["router"] = Router(registry, routing)
        guard = CostGuard(
            cap=cap,
            spent=spent,
            period="2026-10",
            completion_tokens_estimate=completion_tokens,
        )
        orchestrator = Orchestrator(
            registry,
            {adapter.provider_id: adapter for adapter in adapters},
            guard,
            **kwargs,
        )
        orchestrator.start()
        self.orchestrators.append(orchestrator)
        return orchestrator

    def three_providers(self, remote_b=None, **kwargs):
        """remote-a serves code tasks only; remote-b serves everything; local is the fallback."""
        self.remote_a = ScriptedAdapter("remote-a")
        self.remote_b = remote_b or ScriptedAdapter("remote-b")
        self.local = LocalFallbackAdapter()
        return self.build(
            [
                descriptor("remote-a", "0.03", {TaskType.CODE_GENERATION, TaskType.CODE_REVIEW}),
                descriptor("remote-b", "0.01"),
                descriptor("local", "0", offline=True),
            ],
            [self.remote_a, self.remote_b, self.local],
            **kwargs,
        )


class TestRouting(OrchestratorTestCase):
    """Requests reach the right provider and are accounted for."""

    def test_explanation_routed_to_capable_remote(self):
        orchestrator = self.three_providers()
        handle = orchestrator.submit("explanation", "What is a closure?", {"language": "python"})
        response = orchestrator.wait(handle, timeout=5)

        assert response.provider_id == "remote-b"
        assert response.outcome == Outcome.PROVIDER_SUCCESS
        assert response.request_id == handle.id
        assert response.attempts == 1
        assert self.remote_a.calls == []

        records = orchestrator.ledger.records()
        assert len(records) == 1
        assert records[0].provider_id == "remote-b"
        assert records[0].task_type == "explanation"
        assert records[0].outcome == UsageOutcome.SUCCESS
        # 100 tokens at $0.01 per 1K
        assert records[0].cost_estimate == Decimal("0.0010")
        assert orchestrator.spend_state().spent == Decimal("0.0010")
        assert orchestrator.spend_state().reserved == Decimal("0")

    def test_code_generation_prefers_registration_order(self):
        orchestrator = self.three_providers()
        response = orchestrator.wait(orchestrator.submit("code-generation", "parse csv"), timeout=5)
        assert response.provider_id == "remote-a"

    def test_policy_table_selects_provider_for_task(self):
        remote_b = ScriptedAdapter("remote-b")
        remote_c = ScriptedAdapter("remote-c")
        orchestrator = self.build(
            [descriptor("remote-b"), descriptor("remote-c", "0.02"), descriptor("local", "0", offline=True)],
            [remote_b, remote_c, LocalFallbackAdapter()],
            routing={TaskType.EXPLANATION: "remote-c"},
        )
        response = orchestrator.wait(orchestrator.submit("explanation", "What is a closure?"), timeout=5)

        assert response.provider_id == "remote-c"
        assert response.outcome == Outcome.PROVIDER_SUCCESS
        assert remote_c.calls == ["What is a closure?"]
        assert remote_b.calls == []

        records = orchestrator.ledger.records()
        assert len(records) == 1
        assert records[0].provider_id == "remote-c"
        assert records[0].task_type == "explanation"
        assert records[0].outcome == UsageOutcome.SUCCESS

    def test_policy_table_leaves_other_tasks_on_registration_order(self):
        remote_b = ScriptedAdapter("remote-b")
        remote_c = ScriptedAdapter("remote-c")
        orchestrator = self.build(
            [descriptor("remote-b"), descriptor("remote-c", "0.02")],
            [remote_b, remote_c],
            routing={TaskType.EXPLANATION: "remote-c"},
        )
        response = orchestrator.wait(orchestrator.submit("testing", "cover the parser"), timeout=5)
        assert response.provider_id == "remote-b"
        assert remote_c.calls == []

    def test_override_forces_provider(self):
        orchestrator = self.three_providers()
        handle = orchestrator.submit("explanation", "closure", provider_override="local")
        response = orchestrator.wait(handle, timeout=5)
        assert response.provider_id == "local"
        assert response.outcome == Outcome.FALLBACK_SUCCESS

    def test_unavailable_provider_is_skipped(self):
        orchestrator = self.three_providers()
        orchestrator.set_provider_available("remote-b", False)
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)
        assert response.provider_id == "local"
        assert self.remote_b.calls == []

    def test_no_provider_raises_from_submit(self):
        orchestrator = self.three_providers()
        orchestrator.set_provider_available("remote-b", False)
        orchestrator.set_provider_available("local", False)
        with pytest.raises(ProviderUnavailable):
            orchestrator.submit("explanation", "closure")

    def test_validation_error_raises_from_submit(self):
        orchestrator = self.three_providers()
        with pytest.raises(ValidationError):
            orchestrator.submit("poetry", "a sonnet")

    def test_missing_adapter_rejected(self):
        with pytest.raises(ValueError, match="No adapter"):
            Orchestrator(
                ProviderRegistry([descriptor("remote-b")]),
                {},
                CostGuard(cap=10),
            )


class TestCaching(OrchestratorTestCase):
    """Repeated fingerprints are served without a provider call."""

    def test_second_identical_request_is_cache_hit(self):
        orchestrator = self.three_providers()
        first = orchestrator.wait(orchestrator.submit("explanation", "What is a closure?"), timeout=5)
        handle = orchestrator.submit("explanation", "  What is   a closure? ")
        second = orchestrator.wait(handle, timeout=5)

        assert second.outcome == Outcome.CACHE_HIT
        assert second.content == first.content
        assert second.request_id == handle.id
        assert second.request_id != first.request_id
        assert len(self.remote_b.calls) == 1
        assert len(orchestrator.ledger) == 1
        assert orchestrator.cache_stats().hits == 1

    def test_concurrent_identical_requests_share_one_call(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b)

        leader = orchestrator.submit("explanation", "What is a closure?")
        assert remote_b.started.wait(timeout=5)
        followers = [orchestrator.submit("explanation", "What is a closure?") for _ in range(4)]
        assert all(not handle.done() for handle in followers)

        self.gate.set()
        responses = [orchestrator.wait(h, timeout=5) for h in [leader] + followers]

        assert len(remote_b.calls) == 1
        assert len({r.content for r in responses}) == 1
        assert [r.request_id for r in responses] == [h.id for h in [leader] + followers]
        assert orchestrator.cache_stats().attaches == 4
        assert len(orchestrator.ledger) == 1

    def test_different_context_is_a_different_request(self):
        orchestrator = self.three_providers()
        orchestrator.wait(orchestrator.submit("explanation", "closure", {"language": "python"}), timeout=5)
        orchestrator.wait(orchestrator.submit("explanation", "closure", {"language": "rust"}), timeout=5)
        assert len(self.remote_b.calls) == 2


class TestFailurePolicy(OrchestratorTestCase):
    """Retry, re-route and fallback."""

    def test_non_transient_error_falls_back_to_local(self):
        orchestrator = self.three_providers(remote_b=ScriptedAdapter("remote-b", [fatal("remote-b")]))
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)

        assert response.provider_id == "local"
        assert response.outcome == Outcome.FALLBACK_SUCCESS
        assert response.confidence_score == 0.5
        assert response.attempts == 2
        # non-transient errors are not retried
        assert len(self.remote_b.calls) == 1

        failed = [r for r in orchestrator.ledger.records() if not r.billed]
        assert len(failed) == 1
        assert failed[0].provider_id == "remote-b"
        assert failed[0].cost_estimate == Decimal("0")

    def test_transient_error_retried_on_same_provider(self):
        orchestrator = self.three_providers(
            remote_b=ScriptedAdapter("remote-b", [transient("remote-b")]),
            retry_attempts=1,
        )
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)

        assert response.provider_id == "remote-b"
        assert response.attempts == 2
        assert len(self.remote_b.calls) == 2

    def test_retries_exhausted_then_rerouted(self):
        flaky = ScriptedAdapter("remote-b", [transient("remote-b"), transient("remote-b")])
        backup = ScriptedAdapter("remote-c")
        orchestrator = self.build(
            [descriptor("remote-b"), descriptor("remote-c", "0.02"), descriptor("local", "0", offline=True)],
            [flaky, backup, LocalFallbackAdapter()],
            retry_attempts=1,
        )
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)

        assert response.provider_id == "remote-c"
        assert response.outcome == Outcome.PROVIDER_SUCCESS
        assert response.attempts == 3

        summary = orchestrator.get_usage_summary()
        assert summary.failed_attempts == 2
        assert summary.total_requests == 1
        assert summary.per_provider["remote-b"].failed_attempts == 2
        # only the successful provider is billed
        assert summary.total_cost == Decimal("0.0020")
        assert orchestrator.spend_state().spent == Decimal("0.0020")
        assert orchestrator.spend_state().reserved == Decimal("0")

    def test_reroute_skips_provider_refused_by_budget(self):
        broken = ScriptedAdapter("remote-b", [fatal("remote-b")])
        pricey = ScriptedAdapter("remote-c")
        orchestrator = self.build(
            [descriptor("remote-b", "1"), descriptor("remote-c", "100"), descriptor("local", "0", offline=True)],
            [broken, pricey, LocalFallbackAdapter()],
            cap=1,
        )
        response = orchestrator.wait(orchestrator.submit("explanation", "a" * 16), timeout=5)

        assert response.provider_id == "local"
        assert pricey.calls == []

    def test_unexpected_adapter_exception_falls_back(self):
        broken = ScriptedAdapter("remote-b", [KeyError("choices")])
        orchestrator = self.three_providers(remote_b=broken)
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)
        assert response.outcome == Outcome.FALLBACK_SUCCESS

    def test_rate_limited_provider_falls_back(self):
        orchestrator = self.three_providers(rate_limits={"remote-b": 1}, retry_attempts=0)
        first = orchestrator.wait(orchestrator.submit("explanation", "first"), timeout=5)
        second = orchestrator.wait(orchestrator.submit("explanation", "second"), timeout=5)

        assert first.provider_id == "remote-b"
        assert second.provider_id == "local"
        assert self.remote_b.calls == ["first"]

    def test_retry_waits_for_backoff(self):
        orchestrator = self.three_providers(
            remote_b=ScriptedAdapter("remote-b", [transient("remote-b")]),
            retry_attempts=1,
            retry_backoff=0.2,
        )
        started = time.monotonic()
        response = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)

        assert time.monotonic() - started >= 0.2
        assert response.provider_id == "remote-b"
        assert response.attempts == 2

    def test_backoff_past_deadline_reroutes_instead_of_sleeping(self):
        orchestrator = self.three_providers(
            remote_b=ScriptedAdapter("remote-b", [transient("remote-b")]),
            retry_attempts=1,
            retry_backoff=30,
        )
        started = time.monotonic()
        response = orchestrator.wait(orchestrator.submit("explanation", "closure", timeout=3))

        assert time.monotonic() - started < 3
        assert response.provider_id == "local"
        assert response.outcome == Outcome.FALLBACK_SUCCESS
        assert self.remote_b.calls == ["closure"]

    def test_rate_limit_never_throttles_offline_fallback(self):
        broken = ScriptedAdapter("remote-b", [fatal("remote-b"), fatal("remote-b")])
        orchestrator = self.three_providers(remote_b=broken, rate_limits={"local": 1})
        first = orchestrator.wait(orchestrator.submit("explanation", "first"), timeout=5)
        second = orchestrator.wait(orchestrator.submit("explanation", "second"), timeout=5)

        assert first.outcome == Outcome.FALLBACK_SUCCESS
        assert second.outcome == Outcome.FALLBACK_SUCCESS
        assert second.provider_id == "local"

    def test_failed_flight_is_not_cached(self):
        orchestrator = self.three_providers()
        orchestrator.set_provider_available("local", False)
        self.remote_b.script = [fatal("remote-b")]

        handle = orchestrator.submit("explanation", "closure")
        with pytest.raises(ProviderUnavailable):
            orchestrator.wait(handle, timeout=5)
        assert handle.outcome == Outcome.HARD_FAILURE

        retry = orchestrator.wait(orchestrator.submit("explanation", "closure"), timeout=5)
        assert retry.outcome == Outcome.PROVIDER_SUCCESS


class TestBudget(OrchestratorTestCase):
    """Spend cap enforced before any provider call."""

    def test_request_past_cap_rejected_without_provider_call(self):
        """$10 cap with $9.50 spent rejects a $1 estimate."""
        remote = ScriptedAdapter("remote")
        orchestrator = self.build(
            [descriptor("remote", "10")],
            [remote],
            cap=10,
            spent="9.50",
            completion_tokens=96,
        )
        # 16 chars -> 4 prompt tokens + 96 completion = 100 tokens at $10 per 1K
        with pytest.raises(BudgetExceeded) as excinfo:
            orchestrator.submit("explanation", "a" * 16)

        assert excinfo.value.estimate == Decimal("1.0000")
        assert remote.calls == []
        assert orchestrator.spend_state().spent == Decimal("9.50")
        assert orchestrator.spend_state().reserved == Decimal("0")
        assert orchestrator.cache_stats().in_flight == 0

    def test_rollover_restores_budget(self):
        remote = ScriptedAdapter("remote")
        orchestrator = self.build([descriptor("remote", "10")], [remote], cap=10, spent="9.50")
        with pytest.raises(BudgetExceeded):
            orchestrator.submit("explanation", "a" * 16)

        orchestrator.rollover_period("2026-11")
        response = orchestrator.wait(orchestrator.submit("explanation", "a" * 16), timeout=5)
        assert response.provider_id == "remote"
        assert orchestrator.get_usage_summary("2026-11").total_requests == 1
        assert orchestrator.get_usage_summary("2026-10").total_requests == 0


class TestCancellationAndTimeouts(OrchestratorTestCase):
    """Cancel detaches callers; deadlines fail queued work."""

    def test_cancelled_queued_request_never_calls_provider(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b, workers=1)

        running = orchestrator.submit("explanation", "first")
        assert remote_b.started.wait(timeout=5)
        queued = orchestrator.submit("explanation", "second")

        assert orchestrator.cancel(queued) is True
        with pytest.raises(RequestCancelled):
            orchestrator.wait(queued, timeout=5)
        assert queued.cancelled is True

        self.gate.set()
        orchestrator.wait(running, timeout=5)
        orchestrator.stop(drain=True, timeout=5)

        assert remote_b.calls == ["first"]
        assert orchestrator.spend_state().reserved == Decimal("0")

    def test_cancel_detaches_only_one_caller(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b)

        first = orchestrator.submit("explanation", "closure")
        assert remote_b.started.wait(timeout=5)
        second = orchestrator.submit("explanation", "closure")

        orchestrator.cancel(first)
        self.gate.set()

        response = orchestrator.wait(second, timeout=5)
        assert response.provider_id == "remote-b"
        with pytest.raises(RequestCancelled):
            orchestrator.wait(first, timeout=5)

    def test_cancel_after_completion_is_noop(self):
        orchestrator = self.three_providers()
        handle = orchestrator.submit("explanation", "closure")
        orchestrator.wait(handle, timeout=5)
        assert orchestrator.cancel(handle) is False

    def test_deadline_passes_while_queued(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b, workers=1)

        running = orchestrator.submit("explanation", "first")
        assert remote_b.started.wait(timeout=5)
        queued = orchestrator.submit("explanation", "second", timeout=0.05)

        with pytest.raises(RequestTimeout):
            orchestrator.wait(queued)

        self.gate.set()
        orchestrator.wait(running, timeout=5)
        orchestrator.stop(drain=True, timeout=5)

        assert remote_b.calls == ["first"]
        assert queued.outcome == Outcome.HARD_FAILURE
        assert orchestrator.spend_state().reserved == Decimal("0")

    def test_wait_timeout(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b)
        handle = orchestrator.submit("explanation", "closure")
        with pytest.raises(RequestTimeout):
            orchestrator.wait(handle, timeout=0.05)


class TestBackpressure(OrchestratorTestCase):
    """Full queue rejects new work."""

    def test_full_queue_raises_backpressure(self):
        remote_b = ScriptedAdapter("remote-b", gate=self.gate)
        orchestrator = self.three_providers(remote_b=remote_b, workers=1, queue_capacity=1)

        orchestrator.submit("explanation", "running")
        assert remote_b.started.wait(timeout=5)
        orchestrator.submit("explanation", "queued")

        with pytest.raises(Backpressure):
            orchestrator.submit("explanation", "overflow")
        assert orchestrator.spend_state().reserved > Decimal("0")

        self.gate.set()
        orchestrator.stop(drain=True, timeout=5)
        assert orchestrator.spend_state().reserved == Decimal("0")
        assert "overflow" not in remote_b.calls


class TestTaskShortcuts(OrchestratorTestCase):
    """Preset requests for common editor tasks."""

    def test_generate_component(self):
        orchestrator = self.three_providers()
        handle = orchestrator.generate_component("login form", framework="vue")
        response = orchestrator.wait(handle, timeout=5)

        assert response.provider_id == "remote-a"
        assert self.remote_a.calls == ["Create a vue component: login form"]
        assert handle.request.task_type == TaskType.CODE_GENERATION
        assert (ContextKey.FRAMEWORK, "vue") in handle.request.context_tags
        assert (ContextKey.PROJECT_TYPE, "web-app") in handle.request.context_tags

    def test_explain_code(self):
        orchestrator = self.three_providers()
        handle = orchestrator.explain_code("const x = () => 1;")
        response = orchestrator.wait(handle, timeout=5)

        assert response.provider_id == "remote-b"
        assert self.remote_b.calls == ["Explain this code in simple terms"]
        assert orchestrator.ledger.records()[0].task_type == "explanation"
        assert (ContextKey.LANGUAGE, "javascript") in handle.request.context_tags
        assert (ContextKey.FILE_CONTENT, "const x = () => 1;") in handle.request.context_tags

    def test_fix_bug(self):
        orchestrator = self.three_providers()
        handle = orchestrator.fix_bug("items[3]", "IndexError: list index out of range")
        orchestrator.wait(handle, timeout=5)

        assert self.remote_b.calls == ["Fix this error: IndexError: list index out of range"]
        assert orchestrator.ledger.records()[0].task_type == "debugging"
        assert (ContextKey.ERROR_MESSAGE, "IndexError: list index out of range") in handle.request.context_tags

    def test_same_snippet_explained_twice_is_cache_hit(self):
        orchestrator = self.three_providers()
        orchestrator.wait(orchestrator.explain_code("x = 1", language="python"), timeout=5)
        second = orchestrator.wait(orchestrator.explain_code("x = 1", language="python"), timeout=5)

        assert second.outcome == Outcome.CACHE_HIT
        assert len(self.remote_b.calls) == 1


class TestFromConfig:
    """Construction from configuration."""

    def test_default_config_serves_offline(self):
        with Orchestrator.from_config(default_config()) as orchestrator:
            response = orchestrator.wait(orchestrator.submit("documentation", "the cache"), timeout=5)
        assert response.outcome == Outcome.FALLBACK_SUCCESS
        assert response.provider_id == "local"

    def test_remote_without_key_registered_unavailable(self, monkeypatch):
        monkeypatch.delenv("TEST_REMOTE_A_KEY", raising=False)
        config = OrchestratorConfig(
            budget=BudgetConfig(cap=10),
            providers=(
                ProviderSettings(
                    id="remote-a",
                    kind=ProviderKind.OPENAI,
                    capabilities=ALL_TASKS,
                    model="gpt-4o-mini",
                    api_key_env="TEST_REMOTE_A_KEY",
                    price_per_1k_tokens=0.01,
                ),
                ProviderSettings(id="local", kind=ProviderKind.LOCAL, capabilities=ALL_TASKS),
            ),
        )
        orchestrator = Orchestrator.from_config(config)
        assert orchestrator.registry.get("remote-a").available is False
        assert orchestrator.registry.get("local").offline is True

    def test_supplied_adapters_replace_built_ones(self, monkeypatch):
        monkeypatch.setenv("TEST_REMOTE_A_KEY", "sk-test")
        remote = ScriptedAdapter("remote-a")
        config = OrchestratorConfig(
            budget=BudgetConfig(cap=10),
            providers=(
                ProviderSettings(
                    id="remote-a",
                    kind=ProviderKind.OPENAI,
                    capabilities=ALL_TASKS,
                    model="gpt-4o-mini",
                    api_key_env="TEST_REMOTE_A_KEY",
                ),
                ProviderSettings(id="local", kind=ProviderKind.LOCAL, capabilities=ALL_TASKS),
            ),
        )
        with Orchestrator.from_config(config, adapters={"remote-a": remote}) as orchestrator:
            response = orchestrator.wait(orchestrator.submit("testing", "cover the parser"), timeout=5)
        assert response.provider_id == "remote-a"
        assert remote.calls == ["cover the parser"]

    def test_restored_spend_holds_cap_across_restarts(self, monkeypatch, tmp_path):
        """Each call bills $1.00 against a $1.50 cap; the second run starts from persisted spend."""
        monkeypatch.setenv("TEST_REMOTE_A_KEY", "sk-test")
        db_path = str(tmp_path / "usage.db")
        initialize_schema(db_path)
        config = OrchestratorConfig(
            budget=BudgetConfig(cap=1.5, completion_tokens_estimate=60, period="2026-10"),
            providers=(
                ProviderSettings(
                    id="remote-a",
                    kind=ProviderKind.OPENAI,
                    capabilities=ALL_TASKS,
                    model="gpt-4o-mini",
                    api_key_env="TEST_REMOTE_A_KEY",
                    price_per_1k_tokens=10,
                ),
            ),
        )

        first_remote = ScriptedAdapter("remote-a")
        with Orchestrator.from_config(config, adapters={"remote-a": first_remote}) as orchestrator:
            orchestrator.wait(orchestrator.submit("testing", "a" * 16), timeout=5)
            persist_ledger_snapshot(orchestrator.ledger, 0, db_path)

        spent = UsageRepository(db_path).get_period_spend("2026-10")
        assert spent == Decimal("1.0000")

        second_remote = ScriptedAdapter("remote-a")
        with Orchestrator.from_config(config, adapters={"remote-a": second_remote}, spent=spent) as orchestrator:
            assert orchestrator.spend_state().spent == Decimal("1.0000")
            # 4 prompt + 60 completion tokens at $10 per 1K
            with pytest.raises(BudgetExceeded):
                orchestrator.submit("testing", "b" * 16)
        assert second_remote.calls == []
