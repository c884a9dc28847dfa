"""/metrics endpoint and per-request HTTP instrumentation."""
from flask import Blueprint, Response, request, g
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import time

from storefront.metrics import (
    registry, http_requests_total, http_request_duration_seconds, http_requests_in_flight
)

metrics_bp = Blueprint('metrics', __name__)


def setup_metrics_instrumentation(app):
    """Time every request and count it by endpoint and status."""

    @app.before_request
    def start_request_timer():
        g._request_started_at = time.time()
        http_requests_in_flight.inc()

    @app.after_request
    def record_request(response):
        started = g.pop('_request_started_at', None)
        if started is None:
            return response
        try:
            endpoint = request.endpoint or 'unknown'
            http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(time.time() - started)
            http_requests_total.labels(method=request.method, endpoint=endpoint, http_status=response.status_code).inc()
            http_requests_in_flight.dec()
        except Exception as e:
            app.logger.warning(f"Failed to record metrics: {e}")
        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus scrape target. Not authenticated; keep it on the internal network."""
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
