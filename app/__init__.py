# app/__init__.py - Application factory

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from models import db
from config import Config
from app.errors import AppError, InternalError
import logging

logger = logging.getLogger(__name__)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    logging.getLogger().setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    # Initialize extensions
    db.init_app(app)

    # Initialize Flask-Login (bearer tokens, no sessions)
    from app.auth import init_login_manager
    init_login_manager(app)

    # Security headers
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Cache-Control'] = 'no-store'
        if not app.debug and not app.testing:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # Error handlers - every error leaves as {success: false, error, message, code}
    @app.errorhandler(AppError)
    def handle_app_error(e):
        db.session.rollback()
        if e.status_code >= 500:
            logger.error(f"[ERROR] {e.code}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({
            'success': False,
            'error': e.name,
            'message': e.description,
            'code': e.name.upper().replace(' ', '_'),
        }), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        db.session.rollback()
        logger.exception(f"[ERROR] Unhandled exception: {e}")
        error = InternalError('An unexpected error occurred')
        return jsonify(error.to_dict()), error.status_code

    # Register blueprints
    from app.routes.admin import admin
    from app.routes.tracker.income_routes import income_bp
    from app.routes.tracker.payments import payments_bp
    from app.routes.tracker.budgeting import budgeting_bp

    app.register_blueprint(admin)
    app.register_blueprint(income_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(budgeting_bp)

    logger.info(f"[STARTUP] App created ({app.config.get('CURRENT_ENV')}, testing={app.testing})")
    return app
