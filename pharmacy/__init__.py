"""Flask application factory."""
from flask import Flask, g, request, redirect, flash, jsonify
from flask_wtf.csrf import CSRFProtect
from werkzeug.exceptions import HTTPException
from pharmacy.database import init_db
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize CSRF protection
    CSRFProtect(app)

    from flask_wtf.csrf import CSRFError
    from pharmacy.middleware import wants_json

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning(f"CSRF Error: {e.description}")
        if wants_json():
            return jsonify({'status': 'error', 'message': 'Your session has expired. Please reload the page.'}), 400
        flash('Your session has expired or the form is invalid. Please try again.', 'warning')
        return redirect(request.referrer or '/')

    # Initialize Sentry for error tracking in production
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            profiles_sample_rate=0.1,  # 10% for profiling
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Initialize Redis Cache
    from pharmacy.services.cache_service import init_cache
    init_cache(app)

    # Setup Prometheus metrics instrumentation
    from pharmacy.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production' or app.config.get('FLASK_ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=1,      # Trust X-Forwarded-For with 1 proxy
            x_proto=1,    # Trust X-Forwarded-Proto
            x_host=1,     # Trust X-Forwarded-Host
            x_port=1,     # Trust X-Forwarded-Port
            x_prefix=0    # No prefix (not behind a URL prefix)
        )

    # Initialize database (browser storage)
    init_db(app)

    # Load customer, admin and browser storage context before each request
    from pharmacy.middleware import load_request_context, set_browser_id_cookie

    @app.before_request
    def before_request_handler():
        """Load session and browser context for each request."""
        load_request_context()

    app.after_request(set_browser_id_cookie)

    @app.teardown_request
    def close_cart_services(exception=None):
        """Results arriving after the request is over are not adopted."""
        for cart in g.pop('_cart_services', []):
            cart.close()

    # Error Handlers
    from pharmacy.exceptions import AuthError, StorefrontError
    from pharmacy.middleware import intended_destination
    from pharmacy.services.auth_service import area_for_path, expire_session

    @app.errorhandler(AuthError)
    def handle_auth_error(error):
        """Expired or missing session: clear that area's credentials and send the user to its login."""
        area = area_for_path(request.path)
        app.logger.warning(f"AuthError on {request.method} {request.path}: {error.message}")
        expiry = expire_session(area, intended_destination())

        if wants_json():
            return jsonify({**error.to_dict(), **expiry}), error.status_code

        flash(error.message, 'warning')
        return redirect(expiry['redirect'])

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"StorefrontError [{error.status_code}]: {error.message}")
        else:
            app.logger.warning(f"StorefrontError [{error.status_code}]: {error.message}")

        if wants_json():
            return jsonify(error.to_dict()), error.status_code

        # For regular requests: flash message and redirect back
        flash(error.message, 'danger')
        return redirect(request.referrer or '/')

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if wants_json():
            return jsonify({'status': 'error', 'message': error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception(f"Unhandled Exception: {error}")
        if wants_json():
            return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500
        return 'Internal Server Error', 500

    # Keep cached wholesale data in step with admin decisions
    _connect_signal_handlers(app)

    # Register blueprints
    from pharmacy.blueprints.auth import auth_bp
    from pharmacy.blueprints.cart import cart_bp
    from pharmacy.blueprints.wholesale import wholesale_bp
    from pharmacy.blueprints.account import account_bp
    from pharmacy.blueprints.admin import admin_bp
    from pharmacy.blueprints.metrics import metrics_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(wholesale_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from pharmacy.cli_commands import init_cli_commands
    init_cli_commands(app)

    app.logger.info(f"BACKEND_BASE_URL={app.config.get('BACKEND_BASE_URL')}")

    return app


def _connect_signal_handlers(app):
    """Invalidate a customer's cached upgrade status once an admin decides on it."""
    from pharmacy.services.cache_service import get_cache, user_scope
    from pharmacy.services.events import wholesale_request_rejected, wholesale_upgrade_approved

    def forget_status(sender, request_id=None, user_id=None, **extra):
        if user_id is None:
            app.logger.info(f"No user id for wholesale request {request_id}; status cache left to expire")
            return
        get_cache().delete(user_scope(user_id), 'wholesale', 'status')

    app.extensions['wholesale_status_invalidator'] = forget_status
    wholesale_upgrade_approved.connect(forget_status)
    wholesale_request_rejected.connect(forget_status)
