from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "fleethub_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "fleethub_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_RECONCILES = Counter(
    "fleethub_reconciles_total",
    "JoinCluster reconcile attempts",
    labelnames=("result",),
)
_HEARTBEATS = Counter(
    "fleethub_agent_heartbeats_total",
    "Agent heartbeat attempts",
    labelnames=("result",),
)
_RUNTIME_LOOPS = Counter(
    "fleethub_runtime_loops_total",
    "Runtime loop ticks",
    labelnames=("loop", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_reconcile(*, result: str) -> None:
    _RECONCILES.labels(result=result).inc()


def record_heartbeat(*, ok: bool) -> None:
    _HEARTBEATS.labels(result="ok" if ok else "error").inc()


def record_runtime_loop(*, loop: str, ok: bool) -> None:
    _RUNTIME_LOOPS.labels(loop=loop, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
