"""Prometheus registry and counters shared by the services and the /metrics blueprint."""
import os
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry
from prometheus_client import multiprocess, REGISTRY

# Gunicorn workers write to PROMETHEUS_MULTIPROC_DIR
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_metric_registry = registry if not MULTIPROCESS_MODE else None

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
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

http_requests_in_flight = Gauge(
    'http_requests_in_flight',
    'Number of HTTP requests currently being processed',
    registry=_metric_registry
)

promo_validations_total = Counter(
    'promo_validations_total',
    'Promo code validations by result',
    ['result'],
    registry=_metric_registry
)

promo_reservations_total = Counter(
    'promo_reservations_total',
    'Promo code reservation attempts by result',
    ['result'],
    registry=_metric_registry
)

checkout_orders_total = Counter(
    'checkout_orders_total',
    'Order status transitions driven by checkout',
    ['status'],
    registry=_metric_registry
)
