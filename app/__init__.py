"""
SipGrounds settlement backend
Flask application factory
"""
import os
import logging
from flask import Flask
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging, init_request_id_tracking
from .utils.errors import ErrorCode, error_response, internal_error

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()

    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Payment processor used for every charge and webhook
    from .services.payment_gateway import init_payment_gateway
    init_payment_gateway(app)

    # Configure CORS - allow the web frontend
    cors_origins = [app.config['FRONTEND_URL']]
    if config_name != 'production':
        cors_origins += ['http://localhost:3000', 'http://localhost:5173', 'http://127.0.0.1:5173']
    CORS(
        app,
        resources={r'/api/*': {'origins': cors_origins}},
        supports_credentials=True,
        allow_headers=['Content-Type', 'Authorization', 'X-User-Id', 'X-User-Email', 'X-User-Role', 'X-Request-ID'],
    )

    # Request ID tracking for log correlation
    init_request_id_tracking(app)

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Register error handlers
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'sipgrounds', 'payment_gateway': app.extensions['payment_gateway'].name}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.payments import payments_bp
    from .api.orders import orders_bp
    from .api.coupons import coupons_bp
    from .api.rewards import rewards_bp
    from .api.points import points_bp
    from .webhooks.payments import payment_webhook_bp

    # Checkout and payment confirmation
    app.register_blueprint(payments_bp, url_prefix='/api/payments')

    # Processor webhooks
    app.register_blueprint(payment_webhook_bp, url_prefix='/api/payments/webhook')

    # Orders
    app.register_blueprint(orders_bp, url_prefix='/api/orders')

    # Loyalty: coupons, rewards, points
    app.register_blueprint(coupons_bp, url_prefix='/api/coupons')
    app.register_blueprint(rewards_bp, url_prefix='/api/rewards')
    app.register_blueprint(points_bp, url_prefix='/api/points')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""

    @app.errorhandler(400)
    def bad_request(error):
        return error_response('Bad request', ErrorCode.INVALID_REQUEST, 400, log_error=False)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response('Method not allowed', ErrorCode.INVALID_REQUEST, 405, log_error=False)

    @app.errorhandler(Exception)
    def unhandled_exception(error):
        if isinstance(error, HTTPException):
            return error_response(error.description or error.name, ErrorCode.INVALID_REQUEST, error.code, log_error=False)
        logger.exception('Unhandled exception')
        db.session.rollback()
        return internal_error()
