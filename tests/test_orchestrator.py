import asyncio

import pytest

from hybrid_brain.backends.base import ExecutionBackend, ExecutionHandle
from hybrid_brain.config.loader import OrchestratorSettings
from hybrid_brain.orchestrator import (
    HEADER_CLASSIFICATION_SCORE,
    HEADER_CORRELATION_ID,
    HEADER_ERROR,
    HEADER_EXECUTION_PATH,
    BrainOrchestrator,
    BrainStream,
    OrchestrationOutcome,
    OrchestrationState,
)
from hybrid_brain.prompts.cache import PromptCache
from hybrid_brain.rollout.ab_testing import ABTestConfig, ABTestController
from hybrid_brain.routing.classifier import QueryClassifier
from hybrid_brain.schemas import (
    BackendKind,
    BrainRequest,
    ExecutionResult,
    RequestIdentity,
    StreamCompleted,
    TextDelta,
    TokenUsage,
    ToolCallEvent,
    ToolCallRecord,
)

SIMPLE = "What's the weather in Lisbon today?"
COMPLEX = "Create a task in Asana to review the Q3 report and assign it to me"


def completed(kind: BackendKind, text: str) -> StreamCompleted:
    return StreamCompleted(
        result=ExecutionResult(
            backend=kind,
            content=text,
            token_usage=TokenUsage(prompt_tokens=12, completion_tokens=8),
            model=f"{kind}-model",
            execution_time_ms=5.0,
        )
    )


class ScriptedBackend(ExecutionBackend):
    """Plays a script: events are yielded, exceptions raised, numbers slept."""

    def __init__(self, kind: BackendKind, script: list) -> None:
        super().__init__(model=f"{kind}-model")
        self.kind = kind
        self.script = script
        self.opened = 0
        self.released = 0
        self.system_prompts: list[str] = []

    async def _prepare(self, handle: ExecutionHandle) -> None:
        self.opened += 1
        self.system_prompts.append(handle.messages[0]["content"])

    async def _release(self, handle: ExecutionHandle) -> None:
        self.released += 1

    async def _run(self, handle: ExecutionHandle):
        for step in self.script:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, int | float):
                await asyncio.sleep(step)
                continue
            yield step


def _request(text: str) -> BrainRequest:
    return BrainRequest.model_validate({"messages": [{"role": "user", "content": text}]})


def _build(
    agent_script: list,
    direct_script: list,
    *,
    ab: ABTestController | None = None,
    **settings,
) -> tuple[BrainOrchestrator, ScriptedBackend, ScriptedBackend, ABTestController]:
    agent = ScriptedBackend(BackendKind.AGENT, agent_script)
    direct = ScriptedBackend(BackendKind.DIRECT, direct_script)
    controller = ab or ABTestController()
    orchestrator = BrainOrchestrator(
        {BackendKind.AGENT: agent, BackendKind.DIRECT: direct},
        QueryClassifier(),
        PromptCache(lambda request: "SYSTEM PROMPT"),
        ab_controller=controller,
        settings=OrchestratorSettings(**{"backend_timeout_seconds": 1.0, **settings}),
    )
    return orchestrator, agent, direct, controller


AGENT_OK = [TextDelta(text="Task created."), completed(BackendKind.AGENT, "Task created.")]
DIRECT_OK = [
    TextDelta(text="Sunny, "),
    TextDelta(text="24°C."),
    completed(BackendKind.DIRECT, "Sunny, 24°C."),
]


class TestConstruction:
    def test_requires_both_backends(self):
        with pytest.raises(ValueError):
            BrainOrchestrator(
                {BackendKind.AGENT: ScriptedBackend(BackendKind.AGENT, [])},
                QueryClassifier(),
                PromptCache(lambda request: "p"),
            )


class TestRouting:
    def test_classification_disabled_routes_agent(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK, enable_classification=False)
        decision = orchestrator.route(SIMPLE, [], "sys", RequestIdentity())
        assert decision.backend is BackendKind.AGENT
        assert decision.classification is None

    def test_simple_query_routes_direct(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK)
        decision = orchestrator.route(SIMPLE, [], "sys", RequestIdentity(user_id="u1"))
        assert decision.backend is BackendKind.DIRECT
        assert decision.gated_by_rollout is False

    def test_rollout_gates_direct_only(self):
        ab = ABTestController()
        ab.create_test(ABTestConfig(rollout_percentage=0))
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK, ab=ab)

        simple = orchestrator.route(SIMPLE, [], "sys", RequestIdentity(user_id="u1"))
        complex_ = orchestrator.route(COMPLEX, [], "sys", RequestIdentity(user_id="u1"))

        assert simple.backend is BackendKind.AGENT
        assert simple.gated_by_rollout is True
        assert complex_.backend is BackendKind.AGENT
        assert complex_.gated_by_rollout is False

    def test_full_rollout_keeps_direct(self):
        ab = ABTestController()
        ab.create_test(ABTestConfig(rollout_percentage=100))
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK, ab=ab)
        decision = orchestrator.route(SIMPLE, [], "sys", RequestIdentity(user_id="u1"))
        assert decision.backend is BackendKind.DIRECT


class TestProcess:
    async def test_direct_success(self):
        orchestrator, agent, direct, ab = _build(AGENT_OK, DIRECT_OK)

        outcome = await orchestrator.process(_request(SIMPLE), RequestIdentity(user_id="u1"))

        assert outcome.status_code == 200
        assert outcome.headers[HEADER_EXECUTION_PATH] == "direct-backend"
        assert HEADER_CLASSIFICATION_SCORE in outcome.headers
        assert outcome.headers[HEADER_CORRELATION_ID] == outcome.run.correlation_id
        assert outcome.body["content"] == "Sunny, 24°C."
        assert outcome.body["executionPath"] == "direct-backend"
        assert outcome.body["metadata"]["fallbackUsed"] is False
        assert outcome.body["tokenUsage"]["total_tokens"] == 20
        assert outcome.run.transitions == [
            OrchestrationState.RECEIVED,
            OrchestrationState.CLASSIFYING,
            OrchestrationState.ROUTED,
            OrchestrationState.EXECUTING,
            OrchestrationState.COMPLETED,
        ]
        assert (agent.opened, direct.opened, direct.released) == (0, 1, 1)
        assert ab.snapshot(BackendKind.DIRECT).successes == 1

    async def test_context_is_appended_to_system_prompt(self):
        orchestrator, _, direct, _ = _build(AGENT_OK, DIRECT_OK)
        await orchestrator.process(_request(SIMPLE))
        assert direct.system_prompts[0].startswith("SYSTEM PROMPT\n\nContext: User timezone:")

    async def test_direct_failure_falls_back_to_agent(self):
        orchestrator, agent, direct, ab = _build(AGENT_OK, [RuntimeError("upstream 503")])

        outcome = await orchestrator.process(_request(SIMPLE))

        assert outcome.status_code == 200
        assert outcome.headers[HEADER_EXECUTION_PATH] == "agent-backend"
        assert outcome.body["metadata"]["fallbackUsed"] is True
        assert OrchestrationState.RETRYING_OTHER_BACKEND in outcome.run.transitions
        samples = outcome.run.samples
        assert [(s.backend, s.success) for s in samples] == [
            (BackendKind.DIRECT, False),
            (BackendKind.AGENT, True),
        ]
        assert "fallback" in samples[1].feature_flags
        assert ab.snapshot(BackendKind.DIRECT).errors == 1
        assert ab.snapshot(BackendKind.AGENT).successes == 1
        assert (direct.released, agent.released) == (1, 1)

    async def test_both_backends_failing_is_one_fallback_only(self):
        orchestrator, agent, direct, _ = _build(
            [RuntimeError("agent down")], [RuntimeError("direct down")]
        )

        outcome = await orchestrator.process(_request(SIMPLE))

        assert outcome.status_code == 500
        assert outcome.body["success"] is False
        assert outcome.body["error"]["type"] == "dual_backend_failure"
        assert outcome.headers[HEADER_ERROR] == "true"
        assert outcome.run.state is OrchestrationState.FAILED_FINAL
        assert (agent.opened, direct.opened) == (1, 1)
        assert len(outcome.run.samples) == 2

    async def test_fallback_disabled_returns_backend_error(self):
        orchestrator, agent, _, _ = _build(
            AGENT_OK, [RuntimeError("direct down")], enable_fallback=False
        )
        outcome = await orchestrator.process(_request(SIMPLE))
        assert outcome.status_code == 502
        assert outcome.body["error"]["type"] == "backend_execution_error"
        assert outcome.headers[HEADER_EXECUTION_PATH] == "direct-backend"
        assert agent.opened == 0

    async def test_timeout_triggers_fallback(self):
        orchestrator, _, direct, _ = _build(AGENT_OK, [5.0], backend_timeout_seconds=0.05)

        outcome = await orchestrator.process(_request(SIMPLE))

        assert outcome.status_code == 200
        assert outcome.headers[HEADER_EXECUTION_PATH] == "agent-backend"
        assert outcome.run.samples[0].success is False
        assert direct.released == 1

    async def test_dual_timeout(self):
        orchestrator, *_ = _build([5.0], [5.0], backend_timeout_seconds=0.05)
        outcome = await orchestrator.process(_request(SIMPLE))
        attempts = outcome.body["error"]["details"]["attempts"]
        assert [a["type"] for a in attempts] == ["backend_timeout", "backend_timeout"]
        assert "direct-backend exceeded 0.05s" in outcome.body["error"]["message"]

    async def test_empty_result_is_malformed_and_falls_back(self):
        orchestrator, *_ = _build(AGENT_OK, [completed(BackendKind.DIRECT, "   ")])
        outcome = await orchestrator.process(_request(SIMPLE))
        assert outcome.headers[HEADER_EXECUTION_PATH] == "agent-backend"

    async def test_classification_disabled_has_no_score_header(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK, enable_classification=False)
        outcome = await orchestrator.process(_request(SIMPLE))
        assert outcome.headers[HEADER_EXECUTION_PATH] == "agent-backend"
        assert HEADER_CLASSIFICATION_SCORE not in outcome.headers
        assert OrchestrationState.CLASSIFYING not in outcome.run.transitions

    async def test_cancellation_cleans_up_without_fallback(self):
        orchestrator, agent, direct, ab = _build(AGENT_OK, [TextDelta(text="Sun"), 10.0])

        task = asyncio.create_task(orchestrator.process(_request(SIMPLE)))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert direct.released == 1
        assert agent.opened == 0
        assert ab.snapshot(BackendKind.DIRECT).cancelled == 1
        assert orchestrator.status()["counters"]["cancelled"] == 1


class TestStreaming:
    async def _collect(self, stream: BrainStream) -> list[dict]:
        return [chunk async for chunk in stream.events()]

    async def test_deltas_then_done(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK)

        stream = await orchestrator.open_stream(_request(SIMPLE))

        assert isinstance(stream, BrainStream)
        assert stream.headers[HEADER_EXECUTION_PATH] == "direct-backend"
        chunks = await self._collect(stream)
        assert [c["type"] for c in chunks] == ["delta", "delta", "done"]
        assert "".join(c["content"] for c in chunks[:-1]) == "Sunny, 24°C."
        assert chunks[-1]["content"] == "Sunny, 24°C."
        assert chunks[-1]["executionPath"] == "direct-backend"
        assert stream.run.state is OrchestrationState.COMPLETED

    async def test_tool_calls_are_streamed_in_order(self):
        call = ToolCallRecord(name="get_weather", input={"location": "Lisbon"}, output="24°C")
        direct_script = [
            ToolCallEvent(call=call),
            TextDelta(text="24°C"),
            completed(BackendKind.DIRECT, "24°C"),
        ]
        orchestrator, *_ = _build(AGENT_OK, direct_script)
        chunks = await self._collect(await orchestrator.open_stream(_request(SIMPLE)))
        assert chunks[0] == {"type": "tool_call", "name": "get_weather", "input": {"location": "Lisbon"}}
        assert [c["type"] for c in chunks] == ["tool_call", "delta", "done"]

    async def test_failure_before_first_event_falls_back(self):
        orchestrator, agent, _, _ = _build(AGENT_OK, [RuntimeError("direct down")])

        stream = await orchestrator.open_stream(_request(SIMPLE))

        assert stream.headers[HEADER_EXECUTION_PATH] == "agent-backend"
        chunks = await self._collect(stream)
        assert chunks[-1]["metadata"]["fallbackUsed"] is True
        assert agent.released == 1

    async def test_failure_after_first_delta_ends_with_error_chunk(self):
        orchestrator, agent, direct, ab = _build(
            AGENT_OK, [TextDelta(text="Sunny"), RuntimeError("connection reset")]
        )

        stream = await orchestrator.open_stream(_request(SIMPLE))
        chunks = await self._collect(stream)

        assert [c["type"] for c in chunks] == ["delta", "error"]
        assert chunks[-1]["error"]["type"] == "streaming_error"
        assert agent.opened == 0
        assert direct.released == 1
        assert stream.run.state is OrchestrationState.FAILED_FINAL
        assert ab.snapshot(BackendKind.DIRECT).errors == 1

    async def test_tool_call_commits_the_stream(self):
        call = ToolCallRecord(name="get_request_suggestions", input={}, output="...")
        orchestrator, agent, _, _ = _build(
            AGENT_OK, [ToolCallEvent(call=call), RuntimeError("boom")]
        )
        chunks = await self._collect(await orchestrator.open_stream(_request(SIMPLE)))
        assert [c["type"] for c in chunks] == ["tool_call", "error"]
        assert agent.opened == 0

    async def test_dual_failure_before_commit_returns_error_outcome(self):
        orchestrator, *_ = _build([RuntimeError("a")], [RuntimeError("d")])
        opened = await orchestrator.open_stream(_request(SIMPLE))
        assert isinstance(opened, OrchestrationOutcome)
        assert opened.status_code == 500
        assert opened.headers[HEADER_ERROR] == "true"

    async def test_consumer_disconnect_releases_backend(self):
        orchestrator, agent, direct, ab = _build(
            AGENT_OK, [TextDelta(text="Sun"), TextDelta(text="ny"), 10.0]
        )
        stream = await orchestrator.open_stream(_request(SIMPLE))
        events = stream.events()

        first = await anext(events)
        await events.aclose()

        assert first == {"type": "delta", "content": "Sun"}
        assert direct.released == 1
        assert agent.opened == 0
        assert stream.run.state is OrchestrationState.CANCELLED
        assert ab.snapshot(BackendKind.DIRECT).cancelled == 1

    async def test_unconsumed_stream_is_released_by_aclose(self):
        orchestrator, _, direct, ab = _build(AGENT_OK, DIRECT_OK)
        stream = await orchestrator.open_stream(_request(SIMPLE))
        await stream.aclose()
        await stream.aclose()
        assert direct.released == 1
        assert ab.snapshot(BackendKind.DIRECT).cancelled == 1


class TestStatusAndConfig:
    async def test_status_counters(self):
        orchestrator, *_ = _build(AGENT_OK, [RuntimeError("down")])
        await orchestrator.process(_request(SIMPLE))
        await orchestrator.process(_request(COMPLEX))

        status = orchestrator.status()

        assert status["counters"]["requests"] == 2
        assert status["counters"]["fallbacks"] == 1
        assert status["counters"]["path:agent-backend"] == 2
        assert status["backends"] == ["agent-backend", "direct-backend"]
        assert status["prompt_cache"]["entries"] == 1

    def test_update_config(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK)
        updated = orchestrator.update_config(enable_fallback=False, backend_timeout_seconds=5)
        assert updated.enable_fallback is False
        assert orchestrator.settings.backend_timeout_seconds == 5

    def test_update_config_rejects_unknown_keys(self):
        orchestrator, *_ = _build(AGENT_OK, DIRECT_OK)
        with pytest.raises(ValueError):
            orchestrator.update_config(turbo_mode=True)
