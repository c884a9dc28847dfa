"""
Rate limiting for promo code endpoints.

Validation and application share one per-client bucket so that codes cannot
be brute-forced by alternating between the two routes.
"""

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

DEFAULT_PROMO_RATE_LIMIT = '10 per minute'

# Keyed by client address: guest identities are free to mint
limiter = Limiter(key_func=get_remote_address, default_limits=[])


def init_rate_limiting(app):
    app.config.setdefault('RATELIMIT_STORAGE_URI', 'memory://')
    app.config.setdefault('RATELIMIT_HEADERS_ENABLED', True)
    limiter.init_app(app)


def _promo_limit():
    return current_app.config.get('PROMO_RATE_LIMIT', DEFAULT_PROMO_RATE_LIMIT)


promo_rate_limit = limiter.shared_limit(_promo_limit, scope='promo')
