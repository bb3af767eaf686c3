"""
Prometheus metrics blueprint for observability.

Exposes /metrics endpoint with HTTP request metrics and storefront counters.
This endpoint should be restricted to internal network or monitoring systems only.
"""
from flask import Blueprint, Response, request, g
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CollectorRegistry, CONTENT_TYPE_LATEST
from prometheus_client import multiprocess, REGISTRY
import time
import os

from pharmacy.services.events import backend_request_failed, cart_local_fallback, cart_merged

metrics_bp = Blueprint('metrics', __name__)

# Check if running in multi-process mode (Gunicorn)
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

# Use multiprocess registry in production with Gunicorn
if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_metric_registry = registry if not MULTIPROCESS_MODE else None

# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'http_status'],
    registry=_metric_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'endpoint'],
    registry=_metric_registry,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0)
)

http_requests_in_flight = Gauge(
    'http_requests_in_flight',
    'Number of HTTP requests currently being processed',
    registry=_metric_registry
)

# Storefront Metrics
cart_merge_items_total = Counter(
    'cart_merge_items_total',
    'Guest cart lines processed at login, by outcome',
    ['outcome'],
    registry=_metric_registry
)

cart_local_fallbacks_total = Counter(
    'cart_local_fallbacks_total',
    'Cart operations applied locally after a backend failure',
    ['operation'],
    registry=_metric_registry
)

wholesale_actions_total = Counter(
    'wholesale_actions_total',
    'Wholesale submissions and admin decisions, by outcome',
    ['action', 'outcome'],
    registry=_metric_registry
)

backend_failures_total = Counter(
    'backend_failures_total',
    'Failed backend API calls, by error kind',
    ['kind'],
    registry=_metric_registry
)


def record_wholesale_action(action, outcome):
    wholesale_actions_total.labels(action=action, outcome=outcome).inc()


def _on_cart_merged(sender, report, **extra):
    if report.updated:
        cart_merge_items_total.labels(outcome='updated').inc(len(report.updated))
    if report.added:
        cart_merge_items_total.labels(outcome='added').inc(len(report.added))
    if report.failed:
        cart_merge_items_total.labels(outcome='failed').inc(len(report.failed))


def _on_cart_local_fallback(sender, operation, **extra):
    cart_local_fallbacks_total.labels(operation=operation).inc()


def _on_backend_request_failed(sender, kind, **extra):
    backend_failures_total.labels(kind=kind).inc()


def setup_metrics_instrumentation(app):
    """
    Setup before_request and after_request hooks for automatic metrics collection,
    and subscribe the storefront counters to their signals.

    This should be called from app factory after app creation.
    """
    cart_merged.connect(_on_cart_merged)
    cart_local_fallback.connect(_on_cart_local_fallback)
    backend_request_failed.connect(_on_backend_request_failed)

    @app.before_request
    def before_request_metrics():
        """Record request start time and increment in-flight counter."""
        g._prometheus_metrics_start_time = time.time()
        http_requests_in_flight.inc()

    @app.after_request
    def after_request_metrics(response):
        """Record request metrics after response is ready."""
        try:
            if hasattr(g, '_prometheus_metrics_start_time'):
                duration = time.time() - g._prometheus_metrics_start_time

                # Get endpoint name (e.g., 'cart.add_item')
                endpoint = request.endpoint or 'unknown'
                method = request.method
                status = response.status_code

                http_request_duration_seconds.labels(
                    method=method,
                    endpoint=endpoint
                ).observe(duration)

                http_requests_total.labels(
                    method=method,
                    endpoint=endpoint,
                    http_status=status
                ).inc()

                http_requests_in_flight.dec()
        except Exception as e:
            # Don't break request flow if metrics fail
            app.logger.warning(f"Failed to record metrics: {e}")

        return response


@metrics_bp.route('/metrics')
def metrics():
    """
    Prometheus metrics endpoint.

    SECURITY NOTE:
    - This endpoint is NOT authenticated
    - Should be restricted by network/firewall rules in production

    Returns:
        Response: Prometheus-formatted metrics in text/plain
    """
    data = generate_latest(registry)
    return Response(data, mimetype=CONTENT_TYPE_LATEST)
