from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

settings_mutations_total = Counter(
    "settings_mutations_total",
    "Total settings override mutations by outcome",
    ["domain", "operation", "outcome"],
)

settings_pointer_repoints_total = Counter(
    "settings_pointer_repoints_total",
    "Total assignment pointers moved by the resolution engine",
    ["domain", "priority"],
)

settings_side_effects_total = Counter(
    "settings_side_effects_total",
    "Total post-commit side effect executions by status",
    ["domain", "side_effect", "status"],
)

settings_side_effect_duration_seconds = Histogram(
    "settings_side_effect_duration_seconds",
    "Post-commit side effect duration in seconds",
    ["side_effect"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _UUID_RE.sub("{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_settings_mutation(domain: str, operation: str, outcome: str) -> None:
    settings_mutations_total.labels(domain=domain, operation=operation, outcome=outcome).inc()


def observe_pointer_repoints(domain: str, priority: str, count: int) -> None:
    if count > 0:
        settings_pointer_repoints_total.labels(domain=domain, priority=priority).inc(count)


def observe_side_effect(domain: str, side_effect: str, status: str, duration: float) -> None:
    settings_side_effects_total.labels(domain=domain, side_effect=side_effect, status=status).inc()
    settings_side_effect_duration_seconds.labels(side_effect=side_effect).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
