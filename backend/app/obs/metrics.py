"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Info

REQUEST_COUNTER = Counter(
	"mod_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"mod_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Moderation reports accepted",
	["reason", "priority", "source"],
)

MOD_REPORTS_REJECTED_TOTAL = Counter(
	"mod_reports_rejected_total",
	"Moderation reports rejected before persistence",
	["reason"],
)

MOD_ACTIONS_TOTAL = Counter(
	"mod_actions_total",
	"Moderation action records written",
	["action_type", "target_type"],
)

MOD_CASCADE_TRACKS = Histogram(
	"mod_cascade_tracks",
	"Track records written per cascading album removal",
	buckets=(0, 1, 2, 5, 10, 20, 50, 100),
)

MOD_REVERSALS_TOTAL = Counter(
	"mod_reversals_total",
	"Moderation actions reversed",
	["action_type", "self_reversal"],
)

MOD_SECURITY_EVENTS_TOTAL = Counter(
	"mod_security_events_total",
	"Security events written by the moderation subsystem",
	["event_type"],
)

MOD_GUARD_DENIALS_TOTAL = Counter(
	"mod_guard_denials_total",
	"Authorization guard denials",
	["check"],
)

MOD_NOTIFICATION_FAILURES_TOTAL = Counter(
	"mod_notification_failures_total",
	"Notification dispatches that failed",
	["kind"],
)

MOD_OPERATION_ERRORS_TOTAL = Counter(
	"mod_operation_errors_total",
	"Moderation operations that ended with an error",
	["operation", "code"],
)

MOD_ADMIN_ALERTS_TOTAL = Counter(
	"mod_admin_alerts_total",
	"Security alerts fanned out to admins",
	["severity"],
)

MOD_EXPORTS_TOTAL = Counter(
	"mod_exports_total",
	"CSV exports generated for moderation staff",
	["kind"],
)

BUILD_INFO = Info(
	"mod_build",
	"Service identity and storage backend of the running moderation API",
)


def observe_request(route: str, method: str, status: int, duration_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(duration_seconds)
