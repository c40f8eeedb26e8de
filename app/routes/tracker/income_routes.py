# app/routes/tracker/income_routes.py - Income event API endpoints

from flask import Blueprint, request, jsonify
from flask_login import login_required
from app.auth import get_request_context
from app.routes.responses import bulk_items, bulk_response
from app.services.tracker.income_service import IncomeEventService, INCOME_STATUSES
from app.services.validation import (
    require_json, optional_json, parse_pagination, pagination_dict, parse_date_range, parse_choice, parse_int
)
import logging

# Set up logging
logger = logging.getLogger(__name__)

income_bp = Blueprint('income_events', __name__, url_prefix='/income-events')


@income_bp.route('', methods=['GET'])
@login_required
def list_income_events():
    """List income events, filterable by source, status, date range and search"""
    ctx = get_request_context()
    limit, offset = parse_pagination(request.args)
    start_date, end_date = parse_date_range(request.args)
    filters = {
        # sourceId is accepted as an alias; sources are free-text on the event
        'source': request.args.get('source') or request.args.get('sourceId'),
        'status': parse_choice(request.args.get('status'), 'status', INCOME_STATUSES, required=False),
        'start_date': start_date,
        'end_date': end_date,
        'search': request.args.get('search'),
    }

    events, total = IncomeEventService.list_events(ctx, filters, limit=limit, offset=offset)
    return jsonify({
        'success': True,
        'incomeEvents': [e.to_dict() for e in events],
        'pagination': pagination_dict(total, limit, offset),
    })


@income_bp.route('', methods=['POST'])
@login_required
def create_income_event():
    ctx = get_request_context()
    event = IncomeEventService.create(ctx, require_json())
    return jsonify({'success': True, 'incomeEvent': event.to_dict()}), 201


@income_bp.route('/bulk', methods=['POST'])
@login_required
def bulk_create_income_events():
    """Create up to MAX_BULK_ITEMS events; per-item errors are keyed by index"""
    ctx = get_request_context()
    created, errors = IncomeEventService.bulk_create(ctx, bulk_items())
    return bulk_response(created, errors, 'created', lambda e: e.to_dict())


@income_bp.route('/upcoming', methods=['GET'])
@login_required
def upcoming_income_events():
    ctx = get_request_context()
    days = parse_int(request.args.get('days'), 'days', required=False, minimum=1, maximum=365)
    events = IncomeEventService.upcoming(ctx, days)
    return jsonify({'success': True, 'incomeEvents': [e.to_dict() for e in events]})


@income_bp.route('/summary', methods=['GET'])
@login_required
def income_summary():
    ctx = get_request_context()
    start_date, end_date = parse_date_range(request.args)
    return jsonify({'success': True, 'summary': IncomeEventService.summary(ctx, start_date, end_date)})


@income_bp.route('/<int:event_id>', methods=['GET'])
@login_required
def get_income_event(event_id):
    ctx = get_request_context()
    return jsonify({'success': True, 'incomeEvent': IncomeEventService.get(ctx, event_id).to_dict()})


@income_bp.route('/<int:event_id>', methods=['PUT'])
@login_required
def update_income_event(event_id):
    ctx = get_request_context()
    event = IncomeEventService.update(ctx, event_id, require_json())
    return jsonify({'success': True, 'incomeEvent': event.to_dict()})


@income_bp.route('/<int:event_id>', methods=['DELETE'])
@login_required
def cancel_income_event(event_id):
    """Income events are never removed, only cancelled"""
    ctx = get_request_context()
    event = IncomeEventService.cancel(ctx, event_id)
    return jsonify({'success': True, 'incomeEvent': event.to_dict()})


@income_bp.route('/<int:event_id>/mark-received', methods=['POST'])
@login_required
def mark_income_received(event_id):
    ctx = get_request_context()
    data = optional_json()
    event, next_event = IncomeEventService.mark_received(
        ctx, event_id,
        actual_date=data.get('actualDate'),
        actual_amount=data.get('actualAmount'),
    )
    return jsonify({
        'success': True,
        'incomeEvent': event.to_dict(),
        'nextEvent': next_event.to_dict() if next_event else None,
    })


@income_bp.route('/<int:event_id>/attributions', methods=['GET'])
@login_required
def income_event_attributions(event_id):
    ctx = get_request_context()
    result = IncomeEventService.list_attributions(ctx, event_id)
    return jsonify({'success': True, **result})
