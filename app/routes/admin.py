# app/routes/admin.py - Unauthenticated health check

import datetime
from flask import Blueprint, jsonify, current_app
from sqlalchemy import text
from models import db
import logging

logger = logging.getLogger(__name__)

admin = Blueprint('admin', __name__, url_prefix='/admin')


@admin.route('/health')
def health_check():
    """Health check: confirms the database answers"""
    try:
        db.session.execute(text('SELECT 1'))
        return jsonify({
            'status': 'healthy',
            'environment': current_app.config.get('CURRENT_ENV'),
            'timestamp': datetime.datetime.utcnow().isoformat()
        })
    except Exception as e:
        db.session.rollback()
        logger.error(f"[HEALTH] Database check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'error': 'Database unavailable'
        }), 503
