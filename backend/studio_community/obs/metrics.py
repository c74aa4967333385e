"""Central registry for Prometheus metrics used by the community core."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"studio_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"studio_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

THREADS_CREATED = Counter(
	"studio_comm_threads_created_total",
	"Community threads created",
	["kind"],
)

THREAD_MEMBERSHIP_CHANGES = Counter(
	"studio_comm_thread_membership_total",
	"Thread membership changes",
	["action"],
)

MESSAGES_POSTED = Counter(
	"studio_comm_messages_posted_total",
	"Messages appended to threads",
)

MESSAGE_MUTATIONS = Counter(
	"studio_comm_message_mutations_total",
	"Message edits, flags and soft deletes",
	["action"],
)

READ_CURSOR_UPDATES = Counter(
	"studio_comm_read_cursor_updates_total",
	"Read cursor updates by outcome",
	["result"],
)

NOTIFICATIONS_ROUTED = Counter(
	"studio_comm_notifications_routed_total",
	"Notification routing outcomes per recipient",
	["category", "result"],
)

DELIVERY_JOBS = Counter(
	"studio_comm_delivery_jobs_total",
	"Delivery jobs handed to the dispatcher",
	["channel", "result"],
)

FANOUT_DURATION = Histogram(
	"studio_comm_fanout_duration_seconds",
	"Time spent fanning out a single event to its recipients",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

STORE_ERRORS = Counter(
	"studio_comm_store_errors_total",
	"Data-access failures surfaced as StoreUnavailable",
	["operation"],
)


def inc_thread_created(kind: str) -> None:
	THREADS_CREATED.labels(kind=kind).inc()


def inc_membership(action: str) -> None:
	THREAD_MEMBERSHIP_CHANGES.labels(action=action).inc()


def inc_message_posted() -> None:
	MESSAGES_POSTED.inc()


def inc_message_mutation(action: str) -> None:
	MESSAGE_MUTATIONS.labels(action=action).inc()


def inc_read_cursor(result: str) -> None:
	READ_CURSOR_UPDATES.labels(result=result).inc()


def notification_routed(category: str, result: str) -> None:
	NOTIFICATIONS_ROUTED.labels(category=category, result=result).inc()


def delivery_job(channel: str, result: str) -> None:
	DELIVERY_JOBS.labels(channel=channel, result=result).inc()


def observe_fanout(duration_seconds: float) -> None:
	FANOUT_DURATION.observe(max(duration_seconds, 0.0))


def inc_store_error(operation: str) -> None:
	STORE_ERRORS.labels(operation=operation).inc()


def observe_request(route: str, method: str, status: int, duration_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(max(duration_seconds, 0.0))
