"""Flask application factory."""
from flask import Flask, request, jsonify
from flask_wtf.csrf import CSRFProtect, CSRFError
from storefront.database import init_db
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize CSRF protection
    csrf = CSRFProtect(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning(f"CSRF Error: {e.description}")
        return jsonify({'status': 'error', 'message': 'Your session has expired. Reload the page.'}), 400

    # Initialize Sentry for error tracking in production
    if app.config.get('SENTRY_DSN') and app.config.get('ENV') == 'production':
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=app.config['SENTRY_DSN'],
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Setup Prometheus metrics instrumentation
    from storefront.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=0)

    # Rate limits on promo code endpoints
    from storefront.decorators.rate_limit import init_rate_limiting
    init_rate_limiting(app)

    # Initialize database
    init_db(app)

    # Payment provider (simulated unless Mercado Pago is configured)
    from storefront.services.payment_gateway import init_payment_gateway
    init_payment_gateway(app)

    # Load customer identity before each request
    from storefront.middleware import load_customer

    @app.before_request
    def before_request_handler():
        """Load customer context for each request."""
        load_customer()

    # Error Handlers
    from storefront.exceptions import StorefrontError, InvariantViolationError

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(error):
        """Handle custom application exceptions."""
        if isinstance(error, InvariantViolationError):
            app.logger.error(f"InvariantViolation: {error.message}")
        else:
            app.logger.warning(f"StorefrontError [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'message': 'Not Found'}), 404

    @app.errorhandler(429)
    def rate_limited(error):
        app.logger.warning(f"Rate limit exceeded on {request.path}: {error.description}")
        return jsonify({'status': 'error', 'message': 'Too many requests. Try again in a minute.'}), 429

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Unhandled Exception on {request.path}: {error}")
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from storefront.blueprints.checkout import checkout_bp
    from storefront.blueprints.metrics import metrics_bp
    from storefront.blueprints.webhooks import webhooks_bp

    app.register_blueprint(checkout_bp)
    app.register_blueprint(metrics_bp)

    # Webhooks must be exempt from CSRF
    csrf.exempt(webhooks_bp)
    app.register_blueprint(webhooks_bp)

    # Register CLI commands
    from storefront.cli_commands import init_cli_commands
    init_cli_commands(app)

    app.logger.info(f"PAYMENT_GATEWAY={app.config.get('PAYMENT_GATEWAY')}")

    return app
