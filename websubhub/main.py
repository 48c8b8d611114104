from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.routing import Match

from . import __version__
from .auth import require_auth
from .blocking import to_thread
from .config import reload_settings, settings
from .distributor import ContentDistributor
from .logging_setup import RequestLogMiddleware, init_logging
from .metrics import LAT, REQS, router as metrics_router
from .sources import AdviceSource, ContentSourceError
from .store import StoreUnavailable, SubscriptionStore
from .tasks import TaskExecutor
from .verifier import Intent, IntentVerifier, Mode

log = logging.getLogger(__name__)

UNMATCHED_ROUTE = "<unmatched>"
MISSING_PARAMS = "params hub.callback, hub.mode, and hub.topic required!"

HELP_PAGE = """
<div style="padding: 0.25rem;">
    Invalid path! Send a <code>POST</code> request to <code>/</code> with the
    form fields <code>hub.callback</code>, <code>hub.mode</code> and
    <code>hub.topic</code> to subscribe to the hub, or a <code>POST</code>
    request to <code>/publish</code> to push content to every subscriber of a
    topic.
</div>
"""


class Health(BaseModel):
    status: str
    time: str
    store: bool
    pending_tasks: int


class PublishRequest(BaseModel):
    topic: str = Field(min_length=1)
    content: str


class Hub:
    """Per-application wiring of the store and the workers that use it."""

    def __init__(
        self,
        store: SubscriptionStore,
        client: httpx.AsyncClient,
        executor: TaskExecutor,
    ):
        self.store = store
        self.client = client
        self.executor = executor
        self.verifier = IntentVerifier(
            client, store, timeout=settings.VERIFY_TIMEOUT_SECONDS
        )
        self.distributor = ContentDistributor(
            client,
            store,
            timeout=settings.DELIVERY_TIMEOUT_SECONDS,
            concurrency=settings.FANOUT_CONCURRENCY,
            max_failures=settings.DELIVERY_MAX_FAILURES,
        )
        self.source = AdviceSource(
            client, settings.CONTENT_SOURCE_URL, timeout=settings.DELIVERY_TIMEOUT_SECONDS
        )


def get_hub(request: Request) -> Hub:
    return request.app.state.hub


def _is_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


def _intake_problem(callback: str, mode: str, topic: str) -> str | None:
    if not (callback and mode and topic):
        return MISSING_PARAMS
    if mode not in {m.value for m in Mode}:
        return f"unsupported hub.mode {mode!r}"
    if not _is_http_url(callback):
        return "hub.callback must be an http(s) URL"
    return None


def _route_label(request: Request) -> str:
    """Route template for metric labels, so raw paths never become series."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED_ROUTE)
    return UNMATCHED_ROUTE


router = APIRouter()


@router.get("/health", response_model=Health)
async def health(hub: Hub = Depends(get_hub)):
    try:
        await to_thread(hub.store.ping)
        store_ok = True
    except StoreUnavailable:
        store_ok = False
    return Health(
        status="ok" if store_ok else "degraded",
        time=datetime.utcnow().isoformat(),
        store=store_ok,
        pending_tasks=hub.executor.pending,
    )


@router.post("/", status_code=202)
async def subscription_request(
    hub: Hub = Depends(get_hub),
    callback: Optional[str] = Form(None, alias="hub.callback"),
    mode: Optional[str] = Form(None, alias="hub.mode"),
    topic: Optional[str] = Form(None, alias="hub.topic"),
    secret: Optional[str] = Form(None, alias="hub.secret"),
):
    timestamp = time.time_ns()
    callback = callback or ""
    mode = mode or ""
    topic = topic or ""

    problem = _intake_problem(callback, mode, topic)
    if problem:
        if _is_http_url(callback):
            hub.executor.submit(
                hub.verifier.deny(callback, topic, problem), name=f"deny:{callback}"
            )
        raise HTTPException(status_code=400, detail=f"Error: {problem}")

    # answers 503 through the StoreUnavailable handler
    await to_thread(hub.store.ping)

    intent = Intent(
        callback=callback,
        mode=Mode(mode),
        topic=topic,
        secret=secret or "",
        timestamp=timestamp,
    )
    hub.executor.submit(hub.verifier.verify(intent), name=f"verify:{callback}")
    return {"accepted": True, "mode": intent.mode.value, "topic": topic}


async def _publish(hub: Hub, topic: str, content: str) -> dict:
    snapshot = await hub.distributor.snapshot(topic)
    hub.executor.submit(
        hub.distributor.distribute(topic, content, snapshot), name=f"publish:{topic}"
    )
    return {"topic": topic, "content": content, "subscribers": len(snapshot)}


@router.post("/publish", status_code=202)
async def publish(
    payload: PublishRequest,
    hub: Hub = Depends(get_hub),
    _=Depends(require_auth),
):
    return await _publish(hub, payload.topic, payload.content)


@router.get("/publish", status_code=202)
async def publish_advice(hub: Hub = Depends(get_hub), _=Depends(require_auth)):
    try:
        advice = await hub.source.fetch()
    except ContentSourceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return await _publish(hub, settings.DEMO_TOPIC, advice)


@router.get("/subscriptions")
async def list_subscriptions(
    topic: str = Query(..., min_length=1),
    hub: Hub = Depends(get_hub),
    _=Depends(require_auth),
):
    subs = await to_thread(hub.store.list_by_topic, topic)
    return {
        "topic": topic,
        "subscriptions": [
            {
                "subscriber": s.subscriber,
                "timestamp": s.timestamp,
                "failures": s.failures,
            }
            for s in subs
        ],
    }


def create_app(transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the hub application.

    ``transport`` replaces the network layer of the outbound HTTP client;
    tests pass an ``httpx.MockTransport`` to stand in for subscribers.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reload_settings()
        store = SubscriptionStore(settings.HUB_DB_PATH)
        try:
            await to_thread(store.init)
        except StoreUnavailable:
            log.error("starting with subscription store unavailable; intake will answer 503")
        client = httpx.AsyncClient(transport=transport, verify=settings.VERIFY_TLS)
        executor = TaskExecutor()
        app.state.hub = Hub(store, client, executor)
        try:
            yield
        finally:
            await executor.shutdown()
            await client.aclose()
            store.close()

    app = FastAPI(title="WebSub Hub", version=__version__, lifespan=lifespan)
    app.add_middleware(RequestLogMiddleware)

    origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _metrics(request: Request, call_next):
        method = request.method
        path = _route_label(request)
        start = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.time() - start
            REQS.labels(method, path, str(status_code)).inc()
            LAT.labels(method, path).observe(duration)

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(
            {"detail": "subscription store unavailable"}, status_code=503
        )

    app.include_router(metrics_router())
    app.include_router(router)

    @app.get("/{path:path}", include_in_schema=False)
    async def invalid_route(path: str):
        return HTMLResponse(HELP_PAGE, status_code=404)

    return app


init_logging(settings.LOG_LEVEL)

app = create_app()
