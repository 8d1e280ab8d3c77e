from __future__ import annotations

import asyncio
import logging
import os

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from relay_gateway.config import AppConfig, load_config_from_env
from relay_gateway.delivery import AppriseNotifier, DeliveryOutcome, Dispatcher
from relay_gateway.engine import DeliveryDispatcher, InboundRequest, RoutingEngine
from relay_gateway.errors import Forbidden, GatewayError, PayloadTooLarge, RequestTimeout
from relay_gateway.messages import parse_content_type
from relay_gateway.networks import Address, parse_address


def resolve_source_address(request: Request, trust_forwarded_for: bool) -> Address | None:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for") or ""
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return parse_address(first)

    if request.client is None:
        return None
    return parse_address(request.client.host)


async def read_body(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge(f"body exceeds {max_bytes} bytes")

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise PayloadTooLarge(f"body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def summarize_outcomes(outcomes: list[DeliveryOutcome]) -> dict[str, int]:
    delivered = sum(1 for outcome in outcomes if outcome.ok)
    return {"delivered": delivered, "failed": len(outcomes) - delivered}


def build_dispatcher(config: AppConfig, logger: logging.Logger) -> Dispatcher:
    recipients = [recipient for topic in config.topics for recipient in topic.recipients]
    notifier = AppriseNotifier(config.secret, recipients)
    return Dispatcher(notifier, config.retry_schedule_ms, logger)


class AppState:
    def __init__(self, config: AppConfig, engine: RoutingEngine) -> None:
        self.config = config
        self.engine = engine


def create_app(
    config: AppConfig | None = None,
    dispatcher: DeliveryDispatcher | None = None,
) -> FastAPI:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("relay-gateway")

    config = config or load_config_from_env(os.environ)
    engine = RoutingEngine(config.topics, dispatcher or build_dispatcher(config, logger))
    state = AppState(config, engine)

    app = FastAPI(title="relay-gateway", version="1.0.0")
    app.state.gateway = state

    async def dispatch_jobs_safe(jobs: list) -> None:
        try:
            outcomes = await engine.dispatch(jobs)
            logger.info("message dispatched", extra=summarize_outcomes(outcomes))
        except Exception as exc:
            logger.exception("background dispatch failed: %s", exc)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "ok": True,
                "service": "relay-gateway",
                "topics": len(engine.registry),
                "deliveryMode": config.delivery_mode,
            },
        )

    @app.post("/{topic_name}/{sender}")
    async def post_message(
        topic_name: str,
        sender: str,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> JSONResponse:
        source = resolve_source_address(request, config.trust_forwarded_for)
        if source is None:
            logger.warning("cannot determine source address", extra={"topic": topic_name})
            raise Forbidden("source address could not be determined")

        # gate before the body is read, so rejected callers cost nothing
        topic = engine.admit(topic_name, source)

        try:
            raw_body = await asyncio.wait_for(read_body(request, config.max_body_bytes), config.body_read_timeout_s)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout("timed out reading request body") from exc
        except ClientDisconnect:
            logger.info("client disconnected before body was read", extra={"topic": topic_name})
            return JSONResponse(status_code=400, content={"error": "client disconnected"})

        inbound = InboundRequest(
            topic_name=topic_name,
            sender_name=sender,
            source_address=source,
            content=parse_content_type(request.headers.get("content-type")),
            raw_body=raw_body,
        )
        jobs = engine.build_jobs(topic, inbound)

        if config.delivery_mode == "async":
            background_tasks.add_task(dispatch_jobs_safe, jobs)
            return JSONResponse(status_code=202, content={"accepted": len(jobs)})

        outcomes = await engine.dispatch(jobs)
        counters = summarize_outcomes(outcomes)
        logger.info("message dispatched", extra={"topic": topic_name, **counters})
        return JSONResponse(
            status_code=200,
            content={**counters, "results": [outcome.to_dict() for outcome in outcomes]},
        )

    @app.exception_handler(GatewayError)
    async def on_gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def on_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("request failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    logger.info(
        "relay-gateway started",
        extra={
            "port": config.port,
            "topicCount": len(config.topics),
            "deliveryMode": config.delivery_mode,
        },
    )

    return app
