# app/routes/tracker/payments.py - Payment and attribution API endpoints

from flask import Blueprint, request, jsonify
from flask_login import login_required
from app.auth import get_request_context
from app.routes.responses import bulk_items, bulk_response
from app.services.tracker.payment_service import PaymentService, PAYMENT_TYPES, FILTER_STATUSES
from app.services.tracker.income_allocation import AllocationService
from app.services.validation import (
    require_json, optional_json, parse_pagination, pagination_dict, parse_date_range,
    parse_choice, parse_int
)
from models import as_float
from datetime import date

payments_bp = Blueprint('payments', __name__, url_prefix='/payments')


@payments_bp.route('', methods=['GET'])
@login_required
def list_payments():
    """List payments; status=overdue selects scheduled payments past due"""
    ctx = get_request_context()
    limit, offset = parse_pagination(request.args)
    start_date, end_date = parse_date_range(request.args)
    filters = {
        'status': parse_choice(request.args.get('status'), 'status', FILTER_STATUSES, required=False),
        'start_date': start_date,
        'end_date': end_date,
        'spending_category_id': parse_int(request.args.get('spendingCategoryId'), 'spendingCategoryId',
                                          required=False),
        'payment_type': parse_choice(request.args.get('paymentType'), 'paymentType', PAYMENT_TYPES,
                                     required=False),
        'search': request.args.get('search'),
    }

    today = date.today()
    payments, total = PaymentService.list_payments(ctx, filters, limit=limit, offset=offset, today=today)
    return jsonify({
        'success': True,
        'payments': [p.to_dict(today) for p in payments],
        'pagination': pagination_dict(total, limit, offset),
    })


@payments_bp.route('', methods=['POST'])
@login_required
def create_payment():
    ctx = get_request_context()
    payment = PaymentService.create(ctx, require_json())
    return jsonify({'success': True, 'payment': payment.to_dict()}), 201


@payments_bp.route('/bulk', methods=['POST'])
@login_required
def bulk_create_payments():
    ctx = get_request_context()
    created, errors = PaymentService.bulk_create(ctx, bulk_items())
    return bulk_response(created, errors, 'created', lambda p: p.to_dict())


@payments_bp.route('/overdue', methods=['GET'])
@login_required
def overdue_payments():
    ctx = get_request_context()
    limit, offset = parse_pagination(request.args)
    today = date.today()
    payments, total, total_amount = PaymentService.overdue(ctx, limit=limit, offset=offset, today=today)
    return jsonify({
        'success': True,
        'payments': [p.to_dict(today) for p in payments],
        'totalOverdueAmount': as_float(total_amount),
        'pagination': pagination_dict(total, limit, offset),
    })


@payments_bp.route('/upcoming', methods=['GET'])
@login_required
def upcoming_payments():
    ctx = get_request_context()
    days = parse_int(request.args.get('days'), 'days', required=False, minimum=1, maximum=365)
    payments = PaymentService.upcoming(ctx, days)
    return jsonify({'success': True, 'payments': [p.to_dict() for p in payments]})


@payments_bp.route('/summary', methods=['GET'])
@login_required
def payment_summary():
    ctx = get_request_context()
    start_date, end_date = parse_date_range(request.args)
    return jsonify({'success': True, 'summary': PaymentService.summary(ctx, start_date, end_date)})


@payments_bp.route('/auto-attribute', methods=['POST'])
@login_required
def auto_attribute_payments():
    """Attribute open payments to the earliest income that covers them"""
    ctx = get_request_context()
    created, skipped = AllocationService.auto_attribute(ctx)
    return jsonify({
        'success': True,
        'attributions': [a.to_dict() for a in created],
        'skippedPaymentIds': skipped,
    })


@payments_bp.route('/<int:payment_id>', methods=['GET'])
@login_required
def get_payment(payment_id):
    ctx = get_request_context()
    return jsonify({'success': True, 'payment': PaymentService.get(ctx, payment_id).to_dict()})


@payments_bp.route('/<int:payment_id>', methods=['PUT'])
@login_required
def update_payment(payment_id):
    ctx = get_request_context()
    payment = PaymentService.update(ctx, payment_id, require_json())
    return jsonify({'success': True, 'payment': payment.to_dict()})


@payments_bp.route('/<int:payment_id>', methods=['DELETE'])
@login_required
def cancel_payment(payment_id):
    ctx = get_request_context()
    payment = PaymentService.cancel(ctx, payment_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})


@payments_bp.route('/<int:payment_id>/mark-paid', methods=['POST'])
@login_required
def mark_payment_paid(payment_id):
    ctx = get_request_context()
    data = optional_json()
    payment, next_payment = PaymentService.mark_paid(
        ctx, payment_id,
        paid_date=data.get('paidDate'),
        paid_amount=data.get('paidAmount'),
    )
    return jsonify({
        'success': True,
        'payment': payment.to_dict(),
        'nextPayment': next_payment.to_dict() if next_payment else None,
    })


@payments_bp.route('/<int:payment_id>/attributions', methods=['GET'])
@login_required
def list_payment_attributions(payment_id):
    ctx = get_request_context()
    result = AllocationService.list_payment_attributions(ctx, payment_id)
    return jsonify({'success': True, **result})


@payments_bp.route('/<int:payment_id>/attributions', methods=['POST'])
@login_required
def attribute_payment(payment_id):
    ctx = get_request_context()
    data = require_json()
    attribution = AllocationService.attribute_payment(
        ctx,
        income_event_id=parse_int(data.get('incomeEventId'), 'incomeEventId'),
        payment_id=payment_id,
        amount=data.get('amount'),
        attribution_type=data.get('attributionType'),
    )
    return jsonify({
        'success': True,
        'attribution': attribution.to_dict(),
        'incomeEvent': attribution.income_event.to_dict(),
    }), 201


@payments_bp.route('/<int:payment_id>/attributions/<int:attribution_id>', methods=['PUT'])
@login_required
def update_payment_attribution(payment_id, attribution_id):
    ctx = get_request_context()
    data = require_json()
    attribution = AllocationService.update_attribution(
        ctx, attribution_id, data.get('amount'), payment_id=payment_id
    )
    return jsonify({
        'success': True,
        'attribution': attribution.to_dict(),
        'incomeEvent': attribution.income_event.to_dict(),
    })


@payments_bp.route('/<int:payment_id>/attributions/<int:attribution_id>', methods=['DELETE'])
@login_required
def remove_payment_attribution(payment_id, attribution_id):
    ctx = get_request_context()
    event = AllocationService.remove_attribution(ctx, attribution_id, payment_id=payment_id)
    return jsonify({'success': True, 'incomeEvent': event.to_dict()})
