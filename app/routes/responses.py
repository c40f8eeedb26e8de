# app/routes/responses.py - Response shaping shared by the API blueprints

from flask import jsonify, request
from app.errors import ValidationError


def bulk_items():
    """Items for a bulk request: either a bare JSON array or {"items": [...]}"""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        data = data.get('items')
    if not isinstance(data, list):
        raise ValidationError('Request body must be an array of items or {"items": [...]}', field='items')
    return data


def bulk_response(created, errors, key, serialize):
    """
    201 when every item was created, 207 when some were, 400 when none were.
    """
    if not errors:
        status = 201
    elif created:
        status = 207
    else:
        status = 400

    return jsonify({
        'success': status != 400,
        key: [serialize(item) for item in created],
        'errors': errors,
        'summary': {
            'total': len(created) + len(errors),
            'created': len(created),
            'failed': len(errors),
        },
    }), status
