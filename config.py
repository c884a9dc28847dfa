"""Configuration module for the storefront checkout application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'storefront')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'storefront')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'storefront')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Pricing (integer cents / basis points only)
    FREE_SHIPPING_THRESHOLD_CENTS = int(os.getenv('FREE_SHIPPING_THRESHOLD_CENTS', '5000'))
    FLAT_SHIPPING_CENTS = int(os.getenv('FLAT_SHIPPING_CENTS', '999'))
    TAX_RATE_BASIS_POINTS = int(os.getenv('TAX_RATE_BASIS_POINTS', '800'))  # 8%

    # Promo codes
    PROMO_RESERVATION_TTL_SECONDS = int(os.getenv('PROMO_RESERVATION_TTL_SECONDS', '900'))  # 15 minutes
    PROMO_REVALIDATION_SECONDS = int(os.getenv('PROMO_REVALIDATION_SECONDS', '300'))  # 5 minutes

    # Promo endpoints: shared per-client limit (Flask-Limiter syntax)
    PROMO_RATE_LIMIT = os.getenv('PROMO_RATE_LIMIT', '10 per minute')
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

    # Store open status (closed store rejects payment intents)
    STORE_OPEN = os.getenv('STORE_OPEN', 'true').lower() == 'true'

    # Payment gateway: 'simulated' or 'mercadopago'
    PAYMENT_GATEWAY = os.getenv('PAYMENT_GATEWAY', 'simulated')
    SIMULATED_PAYMENT_OUTCOME = os.getenv('SIMULATED_PAYMENT_OUTCOME', 'succeeded')
    MP_ACCESS_TOKEN = os.getenv('MP_ACCESS_TOKEN')
    MP_WEBHOOK_SECRET = os.getenv('MP_WEBHOOK_SECRET')
    MP_CURRENCY_ID = os.getenv('MP_CURRENCY_ID', 'USD')
    GATEWAY_TIMEOUT_SECONDS = int(os.getenv('GATEWAY_TIMEOUT_SECONDS', '10'))
    GATEWAY_MAX_ATTEMPTS = int(os.getenv('GATEWAY_MAX_ATTEMPTS', '3'))
    GATEWAY_BACKOFF_SECONDS = float(os.getenv('GATEWAY_BACKOFF_SECONDS', '0.5'))

    # Error tracking (production only)
    SENTRY_DSN = os.getenv('SENTRY_DSN')


class TestConfig(Config):
    """Configuration used by the test suite (in-memory SQLite)."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    PAYMENT_GATEWAY = 'simulated'
    SIMULATED_PAYMENT_OUTCOME = 'pending'
    MP_WEBHOOK_SECRET = 'test-webhook-secret'
    GATEWAY_BACKOFF_SECONDS = 0
    STORE_OPEN = True
