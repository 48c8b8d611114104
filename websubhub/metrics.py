from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQS = Counter(
    "websubhub_requests_total",
    "Requests",
    ["method", "path", "status"],
)
LAT = Histogram(
    "websubhub_latency_seconds",
    "Latency",
    ["method", "path"],
)
VERIFICATIONS = Counter(
    "websubhub_verifications_total",
    "Intent verifications by mode and outcome",
    ["mode", "outcome"],
)
DELIVERIES = Counter(
    "websubhub_deliveries_total",
    "Content pushes by outcome",
    ["outcome"],
)
EVICTIONS = Counter(
    "websubhub_evictions_total",
    "Subscriptions removed after failed deliveries",
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
