import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from hybrid_brain.backends import DirectModelBackend, ExecutionBackend, ToolAgentBackend
from hybrid_brain.config import BrainSettings, load_settings
from hybrid_brain.context import ContextService
from hybrid_brain.errors import ValidationError
from hybrid_brain.messages import MessageAdapter
from hybrid_brain.observability import CorrelationIdFilter
from hybrid_brain.orchestrator import BrainOrchestrator, BrainStream, OrchestrationOutcome
from hybrid_brain.prompts import PromptCache, build_system_prompt
from hybrid_brain.resources import ResourceManager
from hybrid_brain.rollout import ABTestConfig, ABTestController
from hybrid_brain.routing import QueryClassifier
from hybrid_brain.schemas import BackendKind, BrainRequest, RequestIdentity
from hybrid_brain.utils.event_queue import StreamingEventQueue

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s [%(correlation_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())
logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10.0


@dataclass
class BrainServices:
    settings: BrainSettings
    orchestrator: BrainOrchestrator
    resource_manager: ResourceManager
    ab_controller: ABTestController
    direct_backend: DirectModelBackend | None = None
    http_client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        await self.resource_manager.start()
        await self.ab_controller.start()

    async def stop(self) -> None:
        await self.ab_controller.stop()
        await self.resource_manager.stop()
        if self.direct_backend is not None:
            await self.direct_backend.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_services(
    settings: BrainSettings | None = None,
    backends: dict[BackendKind, ExecutionBackend] | None = None,
) -> BrainServices:
    settings = settings or load_settings()
    res = settings.resources
    resource_manager = ResourceManager(
        cache_max_entries=res.cache_max_entries,
        cache_ttl_seconds=res.cache_ttl_seconds,
        max_resources=res.max_resources,
        sweep_interval_seconds=res.sweep_interval_seconds,
        memory_watermark_bytes=res.memory_watermark_mb * 1024 * 1024,
        pressure_eviction_fraction=res.pressure_eviction_fraction,
    )
    prompt_cache = PromptCache(
        build_system_prompt,
        ttl_seconds=settings.prompt_cache.ttl_seconds,
        max_entries=settings.prompt_cache.max_entries,
    )
    resource_manager.attach_cache("prompts", prompt_cache.backing_cache)

    direct_backend: DirectModelBackend | None = None
    http_client: httpx.AsyncClient | None = None
    if backends is None:
        orch = settings.orchestrator
        http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        direct_backend = DirectModelBackend(
            model=orch.direct_model,
            max_steps=orch.direct_max_steps,
            http_client=http_client,
        )
        backends = {
            BackendKind.AGENT: ToolAgentBackend(
                model=orch.agent_model,
                max_iterations=orch.agent_max_iterations,
                resource_manager=resource_manager,
                http_client=http_client,
            ),
            BackendKind.DIRECT: direct_backend,
        }

    ab_controller = ABTestController(
        tick_interval_seconds=settings.rollout.tick_interval_seconds,
        bucket_seconds=settings.rollout.bucket_seconds,
        max_buckets=settings.rollout.max_buckets,
    )
    if settings.rollout.initial_test is not None:
        ab_controller.create_test(settings.rollout.initial_test)

    classifier_settings = settings.classifier
    orchestrator = BrainOrchestrator(
        backends,
        QueryClassifier(
            complexity_threshold=classifier_settings.complexity_threshold,
            confidence_threshold=classifier_settings.confidence_threshold,
            agent_model=settings.orchestrator.agent_model,
            direct_model=settings.orchestrator.direct_model,
        ),
        prompt_cache,
        message_adapter=MessageAdapter(
            max_content_length=classifier_settings.max_content_length,
            max_history_turns=classifier_settings.max_history_turns,
        ),
        context_service=ContextService(),
        ab_controller=ab_controller,
        settings=settings.orchestrator,
    )
    return BrainServices(
        settings=settings,
        orchestrator=orchestrator,
        resource_manager=resource_manager,
        ab_controller=ab_controller,
        direct_backend=direct_backend,
        http_client=http_client,
    )


class RolloutUpdate(BaseModel):
    rollout_percentage: float = Field(ge=0, le=100)


def _identity(request: Request) -> RequestIdentity:
    return RequestIdentity(
        user_id=request.headers.get("x-user-id"),
        session_id=request.headers.get("x-session-id"),
        ip_address=request.client.host if request.client else None,
    )


def _wants_stream(request: Request, stream: bool) -> bool:
    return stream or "text/event-stream" in request.headers.get("accept", "")


def _outcome_response(outcome: OrchestrationOutcome) -> JSONResponse:
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )


def _sse_response(brain_stream: BrainStream) -> StreamingResponse:
    event_queue = StreamingEventQueue()

    async def event_generator():
        await event_queue.start()
        producer = asyncio.create_task(event_queue.pump(brain_stream.events()))
        finished = False
        try:
            async for chunk in event_queue.consume():
                if chunk == event_queue.HEARTBEAT_SENTINEL:
                    yield ": heartbeat\n\n"
                    continue
                yield f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"
            finished = True
        finally:
            if not finished and not producer.done():
                producer.cancel()
            results = await asyncio.gather(producer, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error("Stream producer failed: %s", results[0])
            await brain_stream.aclose()
            logger.info(
                "Stream stats for %s: %s", brain_stream.correlation_id, event_queue.get_stats()
            )

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            **brain_stream.headers,
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


def create_app(services: BrainServices | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        brain = services or build_services()
        app.state.services = brain
        await brain.start()
        logger.info("Hybrid brain initialized")
        yield
        await brain.stop()
        logger.info("Hybrid brain shut down")

    app = FastAPI(title="Hybrid Brain API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Execution-Path", "X-Classification-Score", "X-Correlation-ID"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(
            "Invalid request body",
            details={"errors": json.loads(json.dumps(exc.errors(), default=str))},
        )
        return JSONResponse(status_code=error.status_code, content=error.to_body())

    def _brain(request: Request) -> BrainServices:
        return request.app.state.services

    @app.post("/api/brain")
    async def brain_endpoint(
        body: BrainRequest,
        request: Request,
        stream: bool = Query(default=False),
    ):
        brain = _brain(request)
        problems = brain.orchestrator.message_adapter.validate_messages(body.messages)
        if problems:
            error = ValidationError("Invalid messages", details={"errors": problems})
            return JSONResponse(status_code=error.status_code, content=error.to_body())

        identity = _identity(request)
        if not _wants_stream(request, stream):
            return _outcome_response(await brain.orchestrator.process(body, identity))

        opened = await brain.orchestrator.open_stream(body, identity)
        if isinstance(opened, OrchestrationOutcome):
            return _outcome_response(opened)
        return _sse_response(opened)

    @app.get("/api/brain/status")
    async def brain_status(request: Request):
        brain = _brain(request)
        return {
            **brain.orchestrator.status(),
            "resources": brain.resource_manager.stats(),
        }

    @app.patch("/api/brain/config")
    async def update_brain_config(changes: dict[str, Any], request: Request):
        try:
            updated = _brain(request).orchestrator.update_config(**changes)
        except (ValueError, PydanticValidationError) as e:
            error = ValidationError(str(e))
            return JSONResponse(status_code=error.status_code, content=error.to_body())
        return updated.model_dump()

    @app.post("/api/rollout/tests", status_code=201)
    async def create_rollout_test(config: ABTestConfig, request: Request):
        controller = _brain(request).ab_controller
        controller.create_test(config)
        return controller.results()

    @app.get("/api/rollout/tests/current")
    async def current_rollout_test(request: Request):
        controller = _brain(request).ab_controller
        if controller.active_test is None:
            raise HTTPException(status_code=404, detail="No active rollout test")
        return controller.results()

    @app.patch("/api/rollout/tests/current")
    async def update_rollout_test(update: RolloutUpdate, request: Request):
        controller = _brain(request).ab_controller
        try:
            controller.update_rollout(update.rollout_percentage)
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return controller.results()

    @app.post("/api/rollout/tests/current/stop")
    async def stop_rollout_test(request: Request):
        controller = _brain(request).ab_controller
        stopped = controller.stop_test()
        if stopped is None:
            raise HTTPException(status_code=404, detail="No active rollout test")
        return {"test_id": stopped.test_id, "status": str(stopped.status)}

    @app.get("/api/resources/stats")
    async def resource_stats(request: Request):
        return _brain(request).resource_manager.stats()

    return app


app = create_app()
