# app.py
"""
Flask Application Factory for the Onboarding Notification Service

This application factory wires:
- Admission-gated onboarding endpoints (invite, validate token, create account)
- Shared services (rate limiter, audit logger, token manager, dispatcher)
- Security headers and CORS on every response
- Error handling, logging and health monitoring
"""

import os
import sys
import logging
from datetime import datetime

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.exceptions import HTTPException

from api.onboarding import onboarding_bp
from config.settings import get_config
from core.database import check_store
from core.services import build_services
from middleware.security import security_headers


def setup_logging(app: Flask) -> None:
    """
    Configure process logging

    Every module logs through `logging.getLogger(__name__)`, so handlers
    are attached to the root logger once per process.
    """
    app.logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper())
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(getattr(handler, '_onboarding', False) for handler in root.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(detailed_formatter)
        stream_handler._onboarding = True
        root.addHandler(stream_handler)

    # Suppress verbose third-party logs
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def configure_security(app: Flask) -> None:
    CORS(app,
         origins=app.config.get('CORS_ORIGINS', ['*']),
         allow_headers=app.config.get('CORS_ALLOW_HEADERS'),
         methods=['POST', 'OPTIONS'])

    @app.after_request
    def after_request(response):
        return security_headers(response)

    app.logger.info("Security features configured")


def configure_error_handlers(app: Flask) -> None:
    """
    JSON bodies for HTTP errors and faults outside the onboarding envelope
    """
    @app.errorhandler(HTTPException)
    def http_error(error):
        if error.code and error.code < 500:
            app.logger.warning(f"{error.code} {error.name} for {request.method} {request.path} "
                               f"from {request.remote_addr}")
        return jsonify({
            'success': False,
            'error': error.name,
            'status_code': error.code,
        }), error.code

    @app.errorhandler(Exception)
    def unhandled(error):
        app.logger.error(f"Unhandled exception on {request.path}: {error}", exc_info=True)
        return jsonify({
            'success': False,
            'error': 'An unexpected error occurred',
            'status_code': 500,
        }), 500


def configure_health_checks(app: Flask) -> None:
    @app.route('/health')
    def health_check():
        """Basic health check with store connectivity"""
        store_ok = check_store(app.onboarding.engine)
        return jsonify({
            'status': 'healthy' if store_ok else 'degraded',
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0'),
            'components': {'store': 'ok' if store_ok else 'unavailable'},
        }), 200 if store_ok else 503


def create_app(config_name: str = None, **service_overrides) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        service_overrides: Passed to build_services (engine, transport, redis_client, clock)

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(get_config(config_name))

    # Client addresses come from X-Forwarded-For behind nginx
    if app.config.get('BEHIND_PROXY'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting onboarding service in {config_name} mode")

    app.onboarding = build_services(app.config, **service_overrides)

    configure_security(app)
    app.register_blueprint(onboarding_bp)
    configure_error_handlers(app)
    configure_health_checks(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    app = create_app('development')
    app.run(host='0.0.0.0', port=5000, debug=True)
