from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request

UNMATCHED_PATH = "<unmatched>"

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served, by route template and status",
    ["method", "path", "status"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "path"],
)

critical_activity_tasks_created_total = Counter(
    "critical_activity_tasks_created_total",
    "Follow-up tasks opened by the critical activity evaluator",
    ["rule_type"],
)
critical_activity_evaluation_failures_total = Counter(
    "critical_activity_evaluation_failures_total",
    "Critical activity rules whose evaluation raised",
    ["rule_type"],
)
critical_activity_evaluation_duration_seconds = Histogram(
    "critical_activity_evaluation_duration_seconds",
    "Time spent evaluating one critical activity rule",
    ["rule_type"],
)

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Committed pipeline transitions",
    ["entity_type", "action"],
)

payment_gateway_requests_total = Counter(
    "payment_gateway_requests_total",
    "Payment gateway calls by resource and outcome",
    ["resource", "outcome"],
)

_PLACEHOLDER = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter collapsed to ``{id}``; raw paths never become labels."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if not isinstance(template, str) or not template:
        return UNMATCHED_PATH
    return _PLACEHOLDER.sub("{id}", template)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rule_evaluation(rule_type: str, tasks_created: int, duration: float) -> None:
    if tasks_created:
        critical_activity_tasks_created_total.labels(rule_type=rule_type).inc(tasks_created)
    critical_activity_evaluation_duration_seconds.labels(rule_type=rule_type).observe(duration)


def observe_rule_failure(rule_type: str) -> None:
    critical_activity_evaluation_failures_total.labels(rule_type=rule_type).inc()


def observe_pipeline_transition(entity_type: str, action: str) -> None:
    pipeline_transitions_total.labels(entity_type=entity_type, action=action).inc()


def observe_gateway_request(resource: str, outcome: str) -> None:
    payment_gateway_requests_total.labels(resource=resource, outcome=outcome).inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
