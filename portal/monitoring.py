# portal/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from prometheus_client import (
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "legalform-portal", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
            handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT, send_default_pii=False)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "portal_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "portal_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

WEBHOOK_EVENTS = Counter(
    "portal_payment_webhooks_total",
    "Payment webhook deliveries",
    ["outcome"],
)

STATUS_TRANSITIONS = Counter(
    "portal_payment_status_transitions_total",
    "Request status writes from payment webhooks",
    ["status", "applied"],
)

PAYMENT_INITIATIONS = Counter(
    "portal_payment_initiations_total",
    "Payment initiation attempts",
    ["outcome"],
)

TRACKING_LOOKUPS = Counter(
    "portal_tracking_lookups_total",
    "Public tracking lookups",
    ["outcome"],
)

RATE_LIMIT_DENIALS = Counter(
    "portal_rate_limit_denials_total",
    "Public tracking lookups refused by the rate limiter",
    ["reason"],
)

NOTIFICATION_FAILURES = Counter(
    "portal_notification_failures_total",
    "Notification dispatch failures",
    ["kind"],
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def inc_webhook(outcome: str):
    try:
        WEBHOOK_EVENTS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_status_transition(status: str, applied: bool):
    try:
        STATUS_TRANSITIONS.labels(status=status, applied=str(applied).lower()).inc()
    except Exception:
        pass


def inc_payment_initiation(outcome: str):
    try:
        PAYMENT_INITIATIONS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_tracking_lookup(outcome: str):
    try:
        TRACKING_LOOKUPS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_rate_limit_denial(reason: str):
    try:
        RATE_LIMIT_DENIALS.labels(reason=reason).inc()
    except Exception:
        pass


def inc_notification_failure(kind: str):
    try:
        NOTIFICATION_FAILURES.labels(kind=kind).inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
