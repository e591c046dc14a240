"""
Request orchestration.

submit() runs the pre-flight pipeline on the caller's thread:

1. Normalize and fingerprint the request
2. Cache lookup (hit resolves at once, in-flight match attaches)
3. Route to a provider
4. Reserve the cost estimate against the budget
5. Enqueue for a worker

Workers then apply the failure policy: retry transient errors against the
same provider, re-route on exhaustion or non-transient errors, and fall back
to the offline provider last. Every queued item ends as exactly one of
cache hit, provider success, fallback success or hard failure.
"""

import dataclasses
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Mapping, Optional, Tuple, Union

import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from ai_orchestrator.providers import ProviderAdapter, ProviderResponse, create_adapter
from ai_orchestrator.storage.models import UsageOutcome, UsageRecord

from .cache import CachedResponse, CacheStats, CacheTTLPolicy, Flight, FlightState, ResponseCache
from .dispatch import DispatchQueue, OverflowPolicy, QueueItem
from .exceptions import (
    BudgetExceeded,
    OrchestratorError,
    ProviderError,
    RequestCancelled,
    RequestTimeout,
)
from .guardrails import CostGuard, Reservation, SpendState, UsageCheck
from .ledger import UsageLedger, UsageSummary
from .logging import get_logger
from .pricing import ZERO, calculate_cost
from .ratelimit import SlidingWindowLimiter
from .registry import ProviderDescriptor, ProviderRegistry
from .request import ContextInput, ContextKey, Fingerprint, Request, RequestNormalizer, TaskType
from .router import Router
from .token_counter import best_effort_total

logger = get_logger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 30.0


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


class Outcome(Enum):
    """Terminal state of a request."""
    CACHE_HIT = "cache_hit"
    PROVIDER_SUCCESS = "provider_success"
    FALLBACK_SUCCESS = "fallback_success"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class OrchestratedResponse:
    """Response delivered to a caller."""
    request_id: str
    fingerprint: Fingerprint
    provider_id: str
    content: str
    tokens_used: Optional[int]
    confidence_score: float
    code_blocks: tuple
    outcome: Outcome
    attempts: int = 1
    latency_ms: float = 0.0


class RequestHandle:
    """Caller's view of a submitted request.

    Each caller gets its own handle, even when several share one flight, so
    cancelling one handle never affects the others.
    """

    def __init__(self, request: Request, fingerprint: Fingerprint, flight: Optional[Flight] = None):
        self.request = request
        self.fingerprint = fingerprint
        self.flight = flight
        self._future: Future = Future()
        self._lock = threading.Lock()
        self._cancelled = False
        if flight is not None:
            flight.future.add_done_callback(self._on_flight_done)

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def done(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> Optional[Outcome]:
        """Terminal outcome seen by this caller, or None while pending."""
        if not self._future.done():
            return None
        if self._future.exception() is not None:
            return Outcome.HARD_FAILURE
        return self._future.result().outcome

    def _set_result(self, result: OrchestratedResponse) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._future.set_result(result)
            return True

    def _set_exception(self, error: BaseException) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._future.set_exception(error)
            return True

    def _cancel(self) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._cancelled = True
            self._future.set_exception(RequestCancelled(f"Request {self.request.id} was cancelled"))
            return True

    def _on_flight_done(self, future: Future) -> None:
        error = future.exception()
        if error is not None:
            self._set_exception(error)
        else:
            self._set_result(dataclasses.replace(future.result(), request_id=self.request.id))


class Orchestrator:
    """Routes, caches, budgets and dispatches AI requests to providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        adapters: Mapping[str, ProviderAdapter],
        guard: CostGuard,
        router: Optional[Router] = None,
        cache: Optional[ResponseCache] = None,
        ledger: Optional[UsageLedger] = None,
        normalizer: Optional[RequestNormalizer] = None,
        retry_attempts: int = 1,
        retry_backoff: float = 0.5,
        queue_capacity: int = 64,
        workers: int = 4,
        overflow: OverflowPolicy = OverflowPolicy.REJECT,
        enqueue_timeout: float = 1.0,
        provider_timeouts: Optional[Mapping[str, float]] = None,
        rate_limits: Optional[Mapping[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Wire the orchestrator from its collaborators.

        Args:
            registry: Providers available for routing
            adapters: Adapter per registered provider id
            guard: Budget enforcement for the current period
            router: Routing policy (defaults to registration order)
            cache: Response cache (defaults to 1024 entries, 1 hour TTL)
            ledger: Usage ledger
            normalizer: Request normalizer
            retry_attempts: Retries per provider after the first transient failure
            retry_backoff: Seconds to sleep between retries
            queue_capacity: Maximum queued items
            workers: Maximum simultaneous provider calls
            overflow: Behaviour when the queue is full
            enqueue_timeout: Seconds to wait under OverflowPolicy.BLOCK
            provider_timeouts: Per-call timeout per provider id
            rate_limits: Requests per minute per provider id
            clock: Monotonic clock shared with the normalizer and cache

        Raises:
            ValueError: If a registered provider has no adapter or a retry
                setting is negative
        """
        missing = [d.id for d in registry.descriptors() if d.id not in adapters]
        if missing:
            raise ValueError(f"No adapter for registered providers: {missing}")
        if retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")
        if retry_backoff < 0:
            raise ValueError("retry_backoff cannot be negative")

        self.registry = registry
        self.guard = guard
        self.router = router or Router(registry)
        self.cache = cache or ResponseCache(clock=clock)
        self.ledger = ledger or UsageLedger()
        self.normalizer = normalizer or RequestNormalizer(clock=clock)
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._adapters = dict(adapters)
        self._timeouts = dict(provider_timeouts or {})
        self._clock = clock
        self._limiter = SlidingWindowLimiter()
        for provider_id, limit in (rate_limits or {}).items():
            self._limiter.set_limit(provider_id, limit)
        self._queue = DispatchQueue(
            self._execute,
            capacity=queue_capacity,
            workers=workers,
            overflow=overflow,
            enqueue_timeout=enqueue_timeout,
        )

    @classmethod
    def from_config(cls, config, adapters=None, spent=ZERO) -> "Orchestrator":
        """Build an orchestrator from an OrchestratorConfig.

        Remote providers whose API key environment variable is unset are
        registered unavailable.

        Args:
            config: Validated OrchestratorConfig
            adapters: Optional adapters by provider id, replacing the ones
                create_adapter would build
            spent: Opening spend for the billing period, e.g. from
                UsageRepository.get_period_spend

        Returns:
            Orchestrator, not yet started
        """
        supplied = dict(adapters or {})
        registry = ProviderRegistry()
        built = {}
        for settings in config.providers:
            usable = settings.is_usable()
            if settings.available and not usable:
                logger.warning(
                    "provider_unconfigured",
                    provider_id=settings.id,
                    api_key_env=settings.api_key_env,
                )
            registry.register(ProviderDescriptor(
                id=settings.id,
                capabilities=settings.capabilities,
                available=usable,
                price_per_1k_tokens=settings.price_per_1k_tokens,
                offline=settings.offline,
            ))
            built[settings.id] = supplied.get(settings.id) or create_adapter(settings)

        cache_config = config.cache
        budget = config.budget
        return cls(
            registry=registry,
            adapters=built,
            guard=CostGuard(
                cap=budget.cap,
                soft_limit_ratio=budget.soft_limit_ratio,
                max_cost_per_request=budget.max_cost_per_request,
                completion_tokens_estimate=budget.completion_tokens_estimate,
                period=budget.period,
                spent=spent,
            ),
            router=Router(registry, config.routing),
            cache=ResponseCache(
                capacity=cache_config.capacity,
                ttl_policy=CacheTTLPolicy(
                    default_ttl_seconds=cache_config.default_ttl_seconds,
                    by_task=dict(cache_config.task_ttls),
                    by_provider=dict(cache_config.provider_ttls),
                ),
            ),
            normalizer=RequestNormalizer(
                fingerprint_includes_override=config.fingerprint_includes_override,
            ),
            retry_attempts=config.retry.attempts,
            retry_backoff=config.retry.backoff_seconds,
            queue_capacity=config.queue.capacity,
            workers=config.queue.workers,
            overflow=config.queue.overflow,
            enqueue_timeout=config.queue.enqueue_timeout,
            provider_timeouts={p.id: p.timeout_seconds for p in config.providers},
            rate_limits={
                p.id: p.requests_per_minute
                for p in config.providers
                if p.requests_per_minute is not None
            },
        )

    # Lifecycle

    def start(self) -> "Orchestrator":
        self._queue.start()
        return self

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the workers. Undrained items fail with RequestCancelled."""
        dropped = self._queue.stop(drain=drain, timeout=timeout)
        for item in dropped:
            self._release(item.reservation)
            self.cache.fail(item.fingerprint, item.flight, RequestCancelled("Orchestrator stopped"))
        for adapter in self._adapters.values():
            adapter.close()

    def __enter__(self) -> "Orchestrator":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # Request API

    def submit(
        self,
        task_type: Union[TaskType, str],
        prompt: str,
        context_tags: ContextInput = None,
        provider_override: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RequestHandle:
        """Submit a request without blocking on the provider call.

        Returns:
            RequestHandle to pass to wait() or cancel()

        Raises:
            ValidationError: If the request is malformed
            ProviderUnavailable: If no provider can serve the task
            BudgetExceeded: If the estimate would push spend past the cap
            Backpressure: If the dispatch queue is full
        """
        request, fingerprint = self.normalizer.normalize(
            task_type, prompt, context_tags, provider_override, timeout
        )
        logger.info(
            "request_submitted",
            request_id=request.id,
            fingerprint=fingerprint.short,
            task_type=request.task_type.value,
            provider_override=request.provider_override,
        )

        lookup = self.cache.lookup(fingerprint)
        if lookup.hit:
            handle = RequestHandle(request, fingerprint)
            handle._set_result(self._from_cache(lookup.entry, request))
            logger.info("request_finished", request_id=request.id, outcome=Outcome.CACHE_HIT.value)
            return handle
        if not lookup.leader:
            return RequestHandle(request, fingerprint, lookup.flight)

        flight = lookup.flight
        reservation = None
        try:
            descriptor = self.router.resolve(request.task_type, request.provider_override)
            reservation = self.guard.reserve(self.guard.estimate(request, descriptor))
            item = QueueItem(
                request=request,
                fingerprint=fingerprint,
                resolved_provider_id=descriptor.id,
                flight=flight,
                reservation=reservation,
            )
            handle = RequestHandle(request, fingerprint, flight)
            self._queue.enqueue(item)
        except Exception as exc:
            self._release(reservation)
            # callers that attached in the meantime see the same error
            self.cache.fail(fingerprint, flight, exc)
            logger.info(
                "request_rejected",
                request_id=request.id,
                error=type(exc).__name__,
                outcome=Outcome.HARD_FAILURE.value,
            )
            raise
        return handle

    def wait(self, handle: RequestHandle, timeout: Optional[float] = None) -> OrchestratedResponse:
        """Block until the handle resolves.

        Without an explicit timeout, the wait is bounded by the request's
        own deadline when it has one.

        Raises:
            RequestTimeout: If the wait elapses first
            RequestCancelled: If the handle was cancelled
            OrchestratorError: The flight's failure
        """
        if timeout is None and handle.request.deadline is not None:
            timeout = max(handle.request.deadline - self._clock(), 0.0)
        try:
            return handle._future.result(timeout)
        except FutureTimeoutError:
            raise RequestTimeout(f"Request {handle.id} did not complete within {timeout:.2f}s")

    def cancel(self, handle: RequestHandle) -> bool:
        """Detach this caller. Returns False if the handle had already resolved.

        The shared flight is abandoned only when no caller remains attached.
        """
        if not handle._cancel():
            return False
        remaining = handle.flight.detach() if handle.flight is not None else 0
        logger.info("request_cancelled", request_id=handle.id, remaining_callers=remaining)
        return True

    def get_usage_summary(self, period: Optional[str] = None) -> UsageSummary:
        """Usage for a billing period (the current one by default)."""
        return self.ledger.summary(period or self.guard.state().period)

    # Task shortcuts

    def generate_component(
        self,
        description: str,
        framework: str = "react",
        timeout: Optional[float] = None,
    ) -> RequestHandle:
        """Submit a code-generation request for a UI component."""
        return self.submit(
            TaskType.CODE_GENERATION,
            f"Create a {framework} component: {description}",
            {ContextKey.FRAMEWORK: framework, ContextKey.PROJECT_TYPE: "web-app"},
            timeout=timeout,
        )

    def explain_code(
        self,
        code: str,
        language: str = "javascript",
        timeout: Optional[float] = None,
    ) -> RequestHandle:
        """Submit a plain-language explanation request for a code snippet."""
        return self.submit(
            TaskType.EXPLANATION,
            "Explain this code in simple terms",
            {
                ContextKey.LANGUAGE: language,
                ContextKey.FILE_NAME: "snippet",
                ContextKey.FILE_CONTENT: code,
            },
            timeout=timeout,
        )

    def fix_bug(self, code: str, error: str, timeout: Optional[float] = None) -> RequestHandle:
        """Submit a debugging request for code and the error it raises."""
        return self.submit(
            TaskType.DEBUGGING,
            f"Fix this error: {error}",
            {
                ContextKey.FILE_NAME: "buggy-code",
                ContextKey.FILE_CONTENT: code,
                ContextKey.ERROR_MESSAGE: error,
            },
            timeout=timeout,
        )

    # Administration

    def usage_check(self) -> UsageCheck:
        return self.guard.usage_check()

    def spend_state(self) -> SpendState:
        return self.guard.state()

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def rollover_period(self, period: str) -> SpendState:
        return self.guard.rollover(period)

    def set_provider_available(self, provider_id: str, available: bool) -> ProviderDescriptor:
        """Mark a provider (un)available for routing.

        Raises:
            KeyError: If the provider is not registered
        """
        descriptor = self.registry.set_available(provider_id, available)
        logger.info("provider_availability_changed", provider_id=provider_id, available=available)
        return descriptor

    # Worker side

    def _execute(self, item: QueueItem) -> None:
        request = item.request
        with structlog.contextvars.bound_contextvars(
            request_id=request.id,
            fingerprint=item.fingerprint.short,
        ):
            if not item.flight.begin():
                if item.flight.state == FlightState.ABANDONED:
                    self._release(item.reservation)
                    self._fail(item, RequestCancelled("All callers cancelled before dispatch"))
                return

            started = time.monotonic()
            try:
                descriptor, reservation, response, attempts = self._run_attempts(item)
            except OrchestratorError as exc:
                self._fail(item, exc)
                return
            except Exception as exc:
                self._fail(item, exc)
                raise

            tokens = best_effort_total(response.tokens_used, reservation.estimate.tokens)
            cost = calculate_cost(descriptor.price_per_1k_tokens, tokens)
            state = self.guard.settle(reservation, cost)
            latency_ms = (time.monotonic() - started) * 1000
            self.ledger.append(UsageRecord(
                timestamp=datetime.now(),
                period=state.period,
                provider_id=descriptor.id,
                task_type=request.task_type.value,
                tokens_estimate=tokens,
                cost_estimate=cost,
                outcome=UsageOutcome.SUCCESS,
                request_id=request.id,
                latency_ms=latency_ms,
            ))

            outcome = Outcome.FALLBACK_SUCCESS if descriptor.offline else Outcome.PROVIDER_SUCCESS
            result = OrchestratedResponse(
                request_id=request.id,
                fingerprint=item.fingerprint,
                provider_id=descriptor.id,
                content=response.content,
                tokens_used=response.tokens_used,
                confidence_score=response.confidence_score,
                code_blocks=tuple(response.code_blocks),
                outcome=outcome,
                attempts=attempts,
                latency_ms=latency_ms,
            )
            self.cache.complete(item.fingerprint, item.flight, result, descriptor.id, request.task_type)
            logger.info(
                "request_finished",
                provider_id=descriptor.id,
                outcome=outcome.value,
                attempts=attempts,
                cost=str(cost),
                latency_ms=round(latency_ms, 1),
            )

    def _run_attempts(self, item: QueueItem) -> Tuple[ProviderDescriptor, Reservation, ProviderResponse, int]:
        request = item.request
        reservation = item.reservation
        self._check_deadline(request, reservation, "queued")

        descriptor = self.registry.get(item.resolved_provider_id)
        tried: List[str] = []
        attempts = 0
        while True:
            tried.append(descriptor.id)
            response, made = self._attempt_provider(item, descriptor, reservation)
            attempts += made
            if response is not None:
                return descriptor, reservation, response, attempts

            self._release(reservation)
            descriptor, reservation = self._reroute(request, tried)

    def _attempt_provider(
        self,
        item: QueueItem,
        descriptor: ProviderDescriptor,
        reservation: Reservation,
    ) -> Tuple[Optional[ProviderResponse], int]:
        """Call one provider, retrying transient failures.

        Returns:
            (response, attempts) where response is None once the provider
            has been given up on

        Raises:
            RequestCancelled: If every caller detached between attempts
            RequestTimeout: If the deadline passed between attempts
        """
        request = item.request
        attempts = 0

        def before_attempt(retry_state: RetryCallState) -> None:
            nonlocal attempts
            if item.flight.abandon_if_unattached():
                self._release(reservation)
                raise RequestCancelled("All callers cancelled before the next attempt")
            self._check_deadline(request, reservation, "in flight")
            attempts = retry_state.attempt_number

        def before_sleep(retry_state: RetryCallState) -> None:
            logger.info(
                "provider_retry_scheduled",
                provider_id=descriptor.id,
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep,
            )

        def attempt() -> ProviderResponse:
            try:
                return self._call_provider(descriptor, request)
            except ProviderError as exc:
                self._record_failed_attempt(request, descriptor, reservation, exc)
                raise

        retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(1 + self.retry_attempts) | self._backoff_outlasts_deadline(request),
            wait=wait_fixed(self.retry_backoff),
            before=before_attempt,
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            return retrying(attempt), attempts
        except ProviderError:
            return None, attempts

    def _backoff_outlasts_deadline(self, request: Request) -> Callable[[RetryCallState], bool]:
        def stop(retry_state: RetryCallState) -> bool:
            if request.deadline is None:
                return False
            return self._clock() + self.retry_backoff >= request.deadline
        return stop

    def _reroute(self, request: Request, tried: List[str]) -> Tuple[ProviderDescriptor, Reservation]:
        """Pick the next untried provider whose estimate fits the budget.

        Raises:
            ProviderUnavailable: When every provider has been tried or refused
        """
        while True:
            descriptor = self.router.resolve(request.task_type, exclude=tried)
            try:
                reservation = self.guard.reserve(self.guard.estimate(request, descriptor))
            except BudgetExceeded:
                logger.info("reroute_skipped", provider_id=descriptor.id, reason="budget")
                tried.append(descriptor.id)
                continue
            logger.info("request_rerouted", provider_id=descriptor.id, tried=list(tried))
            return descriptor, reservation

    def _call_provider(self, descriptor: ProviderDescriptor, request: Request) -> ProviderResponse:
        adapter = self._adapters[descriptor.id]
        # the offline fallback is never throttled
        allowed = descriptor.offline or self._limiter.try_acquire(descriptor.id)[0]
        if not allowed:
            raise ProviderError(
                f"{descriptor.id}: requests per minute exhausted",
                provider_id=descriptor.id,
                transient=True,
                reason="rate_limited",
            )

        timeout = self._timeouts.get(descriptor.id, DEFAULT_PROVIDER_TIMEOUT)
        if request.deadline is not None:
            timeout = min(timeout, max(request.deadline - self._clock(), 0.001))

        with structlog.contextvars.bound_contextvars(provider_id=descriptor.id):
            logger.debug("provider_call_started", timeout=timeout)
            try:
                return adapter.submit(request, timeout)
            except ProviderError:
                raise
            except Exception as exc:
                logger.exception("adapter_contract_violated")
                raise ProviderError(
                    f"{descriptor.id}: adapter raised {type(exc).__name__}",
                    provider_id=descriptor.id,
                    transient=False,
                    reason="adapter_error",
                ) from exc

    def _record_failed_attempt(
        self,
        request: Request,
        descriptor: ProviderDescriptor,
        reservation: Reservation,
        error: ProviderError,
    ) -> None:
        logger.warning(
            "provider_attempt_failed",
            provider_id=descriptor.id,
            reason=error.reason,
            transient=error.transient,
            status_code=error.status_code,
        )
        self.ledger.append(UsageRecord(
            timestamp=datetime.now(),
            period=self.guard.state().period,
            provider_id=descriptor.id,
            task_type=request.task_type.value,
            tokens_estimate=reservation.estimate.tokens,
            cost_estimate=ZERO,
            outcome=UsageOutcome.FAILED_ATTEMPT,
            request_id=request.id,
        ))

    def _check_deadline(self, request: Request, reservation: Reservation, stage: str) -> None:
        if request.deadline is not None and self._clock() >= request.deadline:
            self._release(reservation)
            raise RequestTimeout(f"Request {request.id} deadline passed while {stage}")

    def _release(self, reservation: Optional[Reservation]) -> None:
        if reservation is not None:
            self.guard.release(reservation)

    def _fail(self, item: QueueItem, error: BaseException) -> None:
        self.cache.fail(item.fingerprint, item.flight, error)
        logger.info(
            "request_finished",
            outcome=Outcome.HARD_FAILURE.value,
            error=type(error).__name__,
        )

    def _from_cache(self, entry: CachedResponse, request: Request) -> OrchestratedResponse:
        return dataclasses.replace(
            entry.response,
            request_id=request.id,
            outcome=Outcome.CACHE_HIT,
            attempts=0,
            latency_ms=0.0,
        )
