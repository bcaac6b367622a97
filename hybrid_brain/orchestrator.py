"""Request state machine: classify, route, execute, fall back once, respond.

States move ``received → classifying → routed → executing`` and end in
``completed``, ``failed_final`` or ``cancelled``; a failed first attempt
passes through ``retrying_other_backend``. Every backend attempt records
exactly one PerformanceSample, so the fallback path records two.

Non-streaming requests may fall back after any attempt failure. Streaming
requests may only fall back before the first backend event reaches the
caller; after that a failure ends the stream with an error chunk.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from hybrid_brain.backends.base import ExecutionBackend, ExecutionHandle
from hybrid_brain.config.loader import OrchestratorSettings
from hybrid_brain.constants import LLM_PROVIDER
from hybrid_brain.context import ContextService, ProcessedContext
from hybrid_brain.errors import (
    BackendExecutionError,
    BackendTimeoutError,
    BrainError,
    DualBackendFailure,
    RequestCancelled,
    StreamingError,
)
from hybrid_brain.messages.adapter import ChatTurn, MessageAdapter
from hybrid_brain.observability.request_logger import RequestLogger, correlation_id_var
from hybrid_brain.prompts.cache import PromptCache, PromptRequest, PromptResult
from hybrid_brain.rollout.ab_testing import ABTestController
from hybrid_brain.routing.classifier import QueryClassifier
from hybrid_brain.schemas import (
    BackendEvent,
    BackendKind,
    BrainRequest,
    BrainResponse,
    ClassificationResult,
    ExecutionResult,
    PerformanceInfo,
    PerformanceSample,
    RequestIdentity,
    ResponseMetadata,
    StreamCompleted,
    TextDelta,
    ToolCallEvent,
)

logger = logging.getLogger(__name__)

HEADER_EXECUTION_PATH = "X-Execution-Path"
HEADER_CLASSIFICATION_SCORE = "X-Classification-Score"
HEADER_CORRELATION_ID = "X-Correlation-ID"
HEADER_PROCESSING_TIME = "X-Processing-Time"
HEADER_ERROR = "X-Error"


class OrchestrationState(StrEnum):
    RECEIVED = "received"
    CLASSIFYING = "classifying"
    ROUTED = "routed"
    EXECUTING = "executing"
    RETRYING_OTHER_BACKEND = "retrying_other_backend"
    COMPLETED = "completed"
    FAILED_FINAL = "failed_final"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RoutingDecision:
    backend: BackendKind
    classification: ClassificationResult | None
    gated_by_rollout: bool = False
    classification_time_ms: float | None = None


@dataclass
class RequestRun:
    """Mutable per-request bookkeeping. Never shared across requests."""

    log: RequestLogger
    identity: RequestIdentity
    state: OrchestrationState = OrchestrationState.RECEIVED
    transitions: list[OrchestrationState] = field(default_factory=list)
    samples: list[PerformanceSample] = field(default_factory=list)
    fallback_used: bool = False

    def __post_init__(self) -> None:
        self.transitions.append(self.state)

    @property
    def correlation_id(self) -> str:
        return self.log.correlation_id

    def transition(self, state: OrchestrationState, **data: Any) -> None:
        previous = self.state
        self.state = state
        self.transitions.append(state)
        self.log.info(f"State {previous} -> {state}", **data)


@dataclass(frozen=True)
class PreparedRequest:
    request: BrainRequest
    context: ProcessedContext
    prompt: PromptResult
    history: list[ChatTurn]
    user_input: str
    decision: RoutingDecision


@dataclass
class _Attempt:
    kind: BackendKind
    backend: ExecutionBackend
    deadline: float
    started_at: float = field(default_factory=time.perf_counter)
    handle: ExecutionHandle | None = None
    events: AsyncIterator[BackendEvent] | None = None
    finished: bool = False


@dataclass
class OrchestrationOutcome:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str]
    run: RequestRun
    response: BrainResponse | None = None
    error: BrainError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class BrainOrchestrator:
    def __init__(
        self,
        backends: Mapping[BackendKind, ExecutionBackend],
        classifier: QueryClassifier,
        prompt_cache: PromptCache,
        message_adapter: MessageAdapter | None = None,
        context_service: ContextService | None = None,
        ab_controller: ABTestController | None = None,
        settings: OrchestratorSettings | None = None,
        tenant_config: dict[str, Any] | None = None,
        logger_factory: Callable[[], RequestLogger] = RequestLogger,
    ) -> None:
        missing = [kind for kind in BackendKind if kind not in backends]
        if missing:
            raise ValueError(f"missing backends: {', '.join(missing)}")
        self.backends = dict(backends)
        self.classifier = classifier
        self.prompt_cache = prompt_cache
        self.message_adapter = message_adapter or MessageAdapter()
        self.context_service = context_service or ContextService()
        self.ab_controller = ab_controller
        self.settings = settings or OrchestratorSettings()
        self.tenant_config = tenant_config
        self._logger_factory = logger_factory
        self._counters: Counter[str] = Counter()

    # --------------------------------------------------------------- routing

    def route(
        self,
        user_input: str,
        history: list[ChatTurn],
        system_prompt: str,
        identity: RequestIdentity,
        run: RequestRun | None = None,
    ) -> RoutingDecision:
        if not self.settings.enable_classification:
            decision = RoutingDecision(BackendKind.AGENT, None)
        else:
            if run is not None:
                run.transition(OrchestrationState.CLASSIFYING)
            start = time.perf_counter()
            classification = self.classifier.classify(user_input, history, system_prompt)
            elapsed = (time.perf_counter() - start) * 1000.0
            backend = classification.backend
            gated = False
            if backend is BackendKind.DIRECT and not self._direct_allowed(identity):
                backend, gated = BackendKind.AGENT, True
            decision = RoutingDecision(backend, classification, gated, elapsed)

        if run is not None:
            run.transition(
                OrchestrationState.ROUTED,
                backend=str(decision.backend),
                gated_by_rollout=decision.gated_by_rollout,
                classified=decision.classification is not None,
            )
        return decision

    def _direct_allowed(self, identity: RequestIdentity) -> bool:
        """Rollout buckets gate eligibility for the direct backend only."""
        controller = self.ab_controller
        if controller is None or controller.active_test is None:
            return True
        if controller.active_test.config.candidate_backend is not BackendKind.DIRECT:
            return True
        return controller.is_eligible_for_candidate(identity)

    async def _prepare(self, request: BrainRequest, run: RequestRun) -> PreparedRequest:
        context = self.context_service.process(request, self.tenant_config)
        for warning in self.context_service.validate(request):
            run.log.warn(warning)
        prompt = await self.prompt_cache.get_or_load(
            PromptRequest(
                model_id=context.selected_model,
                context_id=context.context_id,
                tenant_config=context.tenant_config,
                now=context.now,
            )
        )
        run.log.info(
            "Prompt cache hit" if prompt.cache_hit else "Prompt loaded",
            load_time_ms=round(prompt.load_time_ms, 2),
        )
        history = self.message_adapter.history(request)
        user_input = self.message_adapter.extract_user_input(request)
        decision = self.route(user_input, history, prompt.system_prompt, run.identity, run)
        return PreparedRequest(request, context, prompt, history, user_input, decision)

    # -------------------------------------------------------------- attempts

    def _new_run(self, identity: RequestIdentity) -> RequestRun:
        self._counters["requests"] += 1
        return RequestRun(log=self._logger_factory(), identity=identity)

    async def _open_attempt(
        self,
        kind: BackendKind,
        prepared: PreparedRequest,
        run: RequestRun,
    ) -> _Attempt:
        loop = asyncio.get_running_loop()
        attempt = _Attempt(
            kind=kind,
            backend=self.backends[kind],
            deadline=loop.time() + self.settings.backend_timeout_seconds,
        )
        run.transition(OrchestrationState.EXECUTING, backend=str(kind))
        try:
            async with asyncio.timeout_at(attempt.deadline):
                attempt.handle = await attempt.backend.open(
                    prepared.request,
                    prepared.context,
                    prepared.decision.classification,
                    prepared.prompt.system_prompt,
                    prepared.history,
                    prepared.user_input,
                )
        except TimeoutError as e:
            error = BackendTimeoutError(f"{kind} timed out while opening", backend=kind)
            await self._finish_attempt(attempt, run, success=False, error=error)
            raise error from e
        except BackendExecutionError as e:
            await self._finish_attempt(attempt, run, success=False, error=e)
            raise
        except asyncio.CancelledError:
            await self._finish_attempt(attempt, run, success=False, cancelled=True)
            raise
        return attempt

    async def _next_event(self, attempt: _Attempt) -> BackendEvent:
        assert attempt.handle is not None
        if attempt.events is None:
            attempt.events = attempt.backend.stream(attempt.handle)
        try:
            async with asyncio.timeout_at(attempt.deadline):
                return await anext(attempt.events)
        except TimeoutError as e:
            raise BackendTimeoutError(
                f"{attempt.kind} exceeded {self.settings.backend_timeout_seconds:g}s",
                backend=attempt.kind,
            ) from e
        except StopAsyncIteration as e:
            raise BackendExecutionError(
                f"{attempt.kind} stream ended without a result", backend=attempt.kind
            ) from e

    async def _finish_attempt(
        self,
        attempt: _Attempt,
        run: RequestRun,
        *,
        success: bool,
        cancelled: bool = False,
        result: ExecutionResult | None = None,
        error: BrainError | None = None,
    ) -> None:
        if attempt.finished:
            return
        attempt.finished = True
        if attempt.events is not None:
            close = getattr(attempt.events, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.warning("Closing %s stream failed: %s", attempt.kind, e)
        if attempt.handle is not None:
            await attempt.backend.cleanup(attempt.handle)

        duration_ms = (time.perf_counter() - attempt.started_at) * 1000.0
        usage = result.token_usage if result is not None else None
        sample = PerformanceSample(
            backend=attempt.kind,
            success=success and not cancelled,
            cancelled=cancelled,
            duration_ms=duration_ms,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            feature_flags=frozenset({"fallback"}) if run.fallback_used else frozenset(),
            correlation_id=run.correlation_id,
        )
        run.samples.append(sample)
        if self.ab_controller is not None:
            self.ab_controller.record_sample(sample)

        if cancelled:
            run.log.warn("Backend attempt cancelled", backend=str(attempt.kind))
        elif error is not None:
            run.log.error(
                "Backend attempt failed",
                error=error,
                backend=str(attempt.kind),
                duration_ms=round(duration_ms, 2),
            )
        else:
            run.log.info(
                "Backend attempt succeeded",
                backend=str(attempt.kind),
                duration_ms=round(duration_ms, 2),
            )

    async def _execute_attempt(
        self,
        kind: BackendKind,
        prepared: PreparedRequest,
        run: RequestRun,
    ) -> ExecutionResult:
        attempt = await self._open_attempt(kind, prepared, run)
        try:
            while True:
                event = await self._next_event(attempt)
                if isinstance(event, StreamCompleted):
                    result = event.result
                    break
        except BackendExecutionError as e:
            await self._finish_attempt(attempt, run, success=False, error=e)
            raise
        except asyncio.CancelledError:
            await self._finish_attempt(attempt, run, success=False, cancelled=True)
            raise
        await self._finish_attempt(attempt, run, success=True, result=result)
        return result

    def _begin_fallback(self, first: BackendExecutionError, run: RequestRun) -> BackendKind:
        fallback = first.backend.other
        run.fallback_used = True
        self._counters["fallbacks"] += 1
        run.transition(
            OrchestrationState.RETRYING_OTHER_BACKEND,
            failed_backend=str(first.backend),
            fallback_backend=str(fallback),
            error_type=first.error_type,
        )
        run.log.warn(f"Falling back from {first.backend} to {fallback}", error=first.message)
        return fallback

    async def _execute_with_fallback(
        self,
        prepared: PreparedRequest,
        run: RequestRun,
    ) -> tuple[ExecutionResult, BackendKind]:
        primary = prepared.decision.backend
        try:
            return await self._execute_attempt(primary, prepared, run), primary
        except BackendExecutionError as first:
            if not self.settings.enable_fallback:
                raise
            fallback = self._begin_fallback(first, run)
            try:
                return await self._execute_attempt(fallback, prepared, run), fallback
            except BackendExecutionError as second:
                raise DualBackendFailure(first, second) from second

    async def _open_with_fallback(
        self,
        prepared: PreparedRequest,
        run: RequestRun,
    ) -> tuple[_Attempt, BackendEvent]:
        async def start(kind: BackendKind) -> tuple[_Attempt, BackendEvent]:
            attempt = await self._open_attempt(kind, prepared, run)
            try:
                return attempt, await self._next_event(attempt)
            except BackendExecutionError as e:
                await self._finish_attempt(attempt, run, success=False, error=e)
                raise
            except asyncio.CancelledError:
                await self._finish_attempt(attempt, run, success=False, cancelled=True)
                raise

        primary = prepared.decision.backend
        try:
            return await start(primary)
        except BackendExecutionError as first:
            if not self.settings.enable_fallback:
                raise
            fallback = self._begin_fallback(first, run)
            try:
                return await start(fallback)
            except BackendExecutionError as second:
                raise DualBackendFailure(first, second) from second

    # ------------------------------------------------------------- responses

    def _headers(
        self,
        run: RequestRun,
        path: BackendKind | None,
        classification: ClassificationResult | None,
    ) -> dict[str, str]:
        headers = {
            HEADER_CORRELATION_ID: run.correlation_id,
            HEADER_PROCESSING_TIME: f"{run.log.elapsed_ms():.2f}ms",
        }
        if path is not None:
            headers[HEADER_EXECUTION_PATH] = str(path)
        if classification is not None:
            headers[HEADER_CLASSIFICATION_SCORE] = f"{classification.complexity_score:.4f}"
        return headers

    def _build_response(
        self,
        prepared: PreparedRequest,
        result: ExecutionResult,
        path: BackendKind,
        run: RequestRun,
    ) -> BrainResponse:
        classification = prepared.decision.classification
        run.log.log_token_usage(result.token_usage, result.model or "unknown", LLM_PROVIDER)
        performance = PerformanceInfo(
            total_time_ms=run.log.elapsed_ms(),
            classification_time_ms=prepared.decision.classification_time_ms,
            execution_time_ms=result.execution_time_ms,
        )
        run.log.log_performance_metrics(
            execution_path=str(path),
            total_time_ms=round(performance.total_time_ms, 2),
            execution_time_ms=round(performance.execution_time_ms, 2),
            fallback_used=run.fallback_used,
        )
        return BrainResponse(
            content=result.content,
            execution_path=path,
            classification=classification,
            performance=performance,
            token_usage=result.token_usage,
            metadata=ResponseMetadata(
                model=result.model,
                tools_used=sorted({call.name for call in result.tool_calls}),
                confidence=classification.confidence if classification else None,
                reasoning=classification.reasoning if classification else None,
                correlation_id=run.correlation_id,
                fallback_used=run.fallback_used,
            ),
        )

    def _error_outcome(
        self,
        error: BrainError,
        run: RequestRun,
        prepared: PreparedRequest | None,
    ) -> OrchestrationOutcome:
        self._counters["failures"] += 1
        run.transition(OrchestrationState.FAILED_FINAL, error_type=error.error_type)
        run.log.error("Request failed", error=error)
        path = None
        classification = None
        if prepared is not None:
            classification = prepared.decision.classification
            path = error.backend if isinstance(error, BackendExecutionError) else prepared.decision.backend
        headers = self._headers(run, path, classification)
        headers[HEADER_ERROR] = "true"
        return OrchestrationOutcome(
            status_code=error.status_code,
            body=error.to_body(run.correlation_id),
            headers=headers,
            run=run,
            error=error,
        )

    def _mark_cancelled(self, run: RequestRun) -> None:
        self._counters["cancelled"] += 1
        run.transition(OrchestrationState.CANCELLED)
        run.log.warn(
            "Request cancelled by caller",
            error_type=RequestCancelled.error_type,
            status_code=RequestCancelled.status_code,
        )
        run.log.finalize()

    # ------------------------------------------------------------ public API

    async def process(
        self,
        request: BrainRequest,
        identity: RequestIdentity | None = None,
    ) -> OrchestrationOutcome:
        """Run a request to completion and return the JSON envelope."""
        run = self._new_run(identity or RequestIdentity())
        token = correlation_id_var.set(run.correlation_id)
        prepared: PreparedRequest | None = None
        try:
            prepared = await self._prepare(request, run)
            result, path = await self._execute_with_fallback(prepared, run)
            response = self._build_response(prepared, result, path, run)
            run.transition(OrchestrationState.COMPLETED, backend=str(path))
            self._counters[f"path:{path}"] += 1
            return OrchestrationOutcome(
                status_code=200,
                body=response.to_wire(),
                headers=self._headers(run, path, prepared.decision.classification),
                run=run,
                response=response,
            )
        except BrainError as e:
            return self._error_outcome(e, run, prepared)
        except asyncio.CancelledError:
            self._mark_cancelled(run)
            raise
        finally:
            run.log.finalize()
            correlation_id_var.reset(token)

    async def open_stream(
        self,
        request: BrainRequest,
        identity: RequestIdentity | None = None,
    ) -> BrainStream | OrchestrationOutcome:
        """Start a streamed request.

        Returns a ``BrainStream`` once the first backend event is in hand, so
        headers name the backend that actually serves the stream. Failures
        before that point (including a failed fallback) return an error
        outcome instead.
        """
        run = self._new_run(identity or RequestIdentity())
        token = correlation_id_var.set(run.correlation_id)
        prepared: PreparedRequest | None = None
        try:
            prepared = await self._prepare(request, run)
            attempt, first = await self._open_with_fallback(prepared, run)
        except BrainError as e:
            outcome = self._error_outcome(e, run, prepared)
            run.log.finalize()
            return outcome
        except asyncio.CancelledError:
            self._mark_cancelled(run)
            raise
        finally:
            correlation_id_var.reset(token)
        return BrainStream(self, run, prepared, attempt, first)

    def status(self) -> dict[str, Any]:
        return {
            "settings": self.settings.model_dump(),
            "backends": [str(kind) for kind in self.backends],
            "counters": dict(self._counters),
            "classifier": self.classifier.metrics(),
            "prompt_cache": self.prompt_cache.stats(),
            "rollout": self.ab_controller.results() if self.ab_controller else None,
        }

    def update_config(self, **changes: Any) -> OrchestratorSettings:
        unknown = set(changes) - set(OrchestratorSettings.model_fields)
        if unknown:
            raise ValueError(f"unknown orchestrator settings: {', '.join(sorted(unknown))}")
        self.settings = OrchestratorSettings.model_validate(
            {**self.settings.model_dump(), **changes}
        )
        logger.info("Orchestrator settings updated: %s", sorted(changes))
        return self.settings


class BrainStream:
    """A committed streamed response.

    ``headers`` are final before the body starts. ``events()`` yields
    ``delta`` and ``tool_call`` chunks in arrival order, then exactly one
    ``done`` or ``error`` chunk.
    """

    def __init__(
        self,
        orchestrator: BrainOrchestrator,
        run: RequestRun,
        prepared: PreparedRequest,
        attempt: _Attempt,
        first: BackendEvent,
    ) -> None:
        self._orchestrator = orchestrator
        self.run = run
        self._prepared = prepared
        self._attempt = attempt
        self._first: BackendEvent | None = first
        self.execution_path = attempt.kind
        self.classification = prepared.decision.classification
        self.headers = orchestrator._headers(run, attempt.kind, self.classification)

    @property
    def correlation_id(self) -> str:
        return self.run.correlation_id

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        orchestrator = self._orchestrator
        run = self.run
        attempt = self._attempt
        # Generators may resume in another context, so the id is set, not reset.
        correlation_id_var.set(run.correlation_id)
        try:
            event = self._first
            self._first = None
            if event is None:
                raise RuntimeError("stream already consumed")
            while not isinstance(event, StreamCompleted):
                if isinstance(event, TextDelta):
                    yield {"type": "delta", "content": event.text}
                elif isinstance(event, ToolCallEvent):
                    yield {"type": "tool_call", "name": event.call.name, "input": event.call.input}
                event = await orchestrator._next_event(attempt)
        except BackendExecutionError as e:
            await orchestrator._finish_attempt(attempt, run, success=False, error=e)
            error = StreamingError(
                f"stream from {attempt.kind} failed after output started: {e.message}",
                details={"backend": str(attempt.kind), "cause": e.error_type},
            )
            orchestrator._counters["stream_failures"] += 1
            run.transition(OrchestrationState.FAILED_FINAL, error_type=error.error_type)
            run.log.error("Streaming failed", error=error)
            run.log.finalize()
            yield {"type": "error", **error.to_body(run.correlation_id)}
            return
        except (asyncio.CancelledError, GeneratorExit):
            await orchestrator._finish_attempt(attempt, run, success=False, cancelled=True)
            orchestrator._mark_cancelled(run)
            raise

        result = event.result
        await orchestrator._finish_attempt(attempt, run, success=True, result=result)
        response = orchestrator._build_response(self._prepared, result, attempt.kind, run)
        run.transition(OrchestrationState.COMPLETED, backend=str(attempt.kind))
        orchestrator._counters[f"path:{attempt.kind}"] += 1
        run.log.finalize()
        yield {"type": "done", **response.to_wire()}

    async def aclose(self) -> None:
        """Release the backend if the body is never consumed."""
        if not self._attempt.finished:
            await self._orchestrator._finish_attempt(
                self._attempt, self.run, success=False, cancelled=True
            )
            self._orchestrator._mark_cancelled(self.run)
