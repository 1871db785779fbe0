"""
Prometheus metrics for the billing core and the image API.

This module initializes and exposes Prometheus metrics for monitoring:
- HTTP request metrics (count, duration, status codes)
- Credit ledger activity (deductions, denials, refreshes)
- Subscription tier changes and Stripe webhook outcomes
- Database and fal.ai call latency
"""

import logging
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ==================== HTTP Request Metrics ====================
http_request_count = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint and status code",
    ["method", "endpoint", "status_code"],
)

http_request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds by method and endpoint",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

# ==================== Credit Metrics ====================
credits_deducted = Counter(
    "credits_deducted_total",
    "Credits deducted after a successful AI operation",
    ["operation"],
)

credit_denials = Counter(
    "credit_denials_total",
    "Operations refused before calling the AI provider",
    ["operation", "reason"],
)

credit_refreshes = Counter(
    "credit_refreshes_total",
    "Credit balances refreshed to the tier ceiling",
    ["trigger"],
)

# ==================== Subscription Metrics ====================
tier_changes = Counter(
    "tier_changes_total",
    "Subscription tier changes; guarded=true when the credit refresh was suppressed",
    ["tier", "guarded"],
)

billing_webhook_events = Counter(
    "billing_webhook_events_total",
    "Stripe webhook events by type and processing outcome",
    ["event_type", "outcome"],
)

# ==================== Dependency Metrics ====================
database_query_count = Counter(
    "database_queries_total",
    "Total database queries by table and operation",
    ["table", "operation"],
)

database_query_duration = Histogram(
    "database_query_duration_seconds",
    "Database query duration in seconds by table",
    ["table"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)

fal_request_duration = Histogram(
    "fal_request_duration_seconds",
    "fal.ai model call duration in seconds",
    ["model", "status"],
    buckets=(0.5, 1, 2.5, 5, 10, 25, 60, 120),
)


def record_credit_deduction(operation: str, amount: int):
    """Record credits charged for an operation."""
    if amount > 0:
        credits_deducted.labels(operation=operation).inc(amount)


def record_credit_denial(operation: str, reason: str):
    credit_denials.labels(operation=operation, reason=reason).inc()


def record_credit_refresh(trigger: str):
    """Record a refresh to max; trigger is e.g. 'tier_change', 'new_period', 'manual_reset'."""
    credit_refreshes.labels(trigger=trigger).inc()


def record_tier_change(tier: str, guarded: bool):
    tier_changes.labels(tier=tier, guarded=str(guarded).lower()).inc()


def record_webhook_event(event_type: str, outcome: str):
    billing_webhook_events.labels(event_type=event_type, outcome=outcome).inc()


@contextmanager
def track_database_query(table: str, operation: str):
    """Context manager to track database query metrics."""
    start_time = time.time()
    try:
        yield
    finally:
        duration = time.time() - start_time
        database_query_count.labels(table=table, operation=operation).inc()
        database_query_duration.labels(table=table).observe(duration)


@contextmanager
def track_fal_request(model: str):
    """Context manager timing a fal.ai call; status is 'error' when the block raises."""
    start_time = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        fal_request_duration.labels(model=model, status=status).observe(time.time() - start_time)


def record_http_response(method: str, endpoint: str, status_code: int, duration: float):
    http_request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration)
