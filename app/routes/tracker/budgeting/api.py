# app/routes/tracker/budgeting/api.py - Budget category and allocation endpoints

from flask import jsonify, request
from flask_login import login_required
from app.auth import get_request_context
from app.services.tracker.category_service import BudgetCategoryService
from app.services.tracker.income_allocation import AllocationService
from app.services.validation import require_json, optional_json, parse_bool, parse_int
from . import budgeting_bp


# ============================================================================
# BUDGET CATEGORIES
# ============================================================================

@budgeting_bp.route('/budget-categories', methods=['GET'])
@login_required
def list_budget_categories():
    """
    List categories with the active percentage total.
    Query params: includeInactive (default false)
    """
    ctx = get_request_context()
    include_inactive = parse_bool(request.args.get('includeInactive'), 'includeInactive')
    result = BudgetCategoryService.list_categories(ctx, include_inactive=include_inactive)
    return jsonify({'success': True, **result})


@budgeting_bp.route('/budget-categories', methods=['POST'])
@login_required
def create_budget_category():
    ctx = get_request_context()
    category = BudgetCategoryService.create(ctx, require_json())
    return jsonify({'success': True, 'category': category.to_dict()}), 201


@budgeting_bp.route('/budget-categories/validate-percentages', methods=['POST'])
@login_required
def validate_budget_percentages():
    """Check whether a percentage would fit without saving anything"""
    ctx = get_request_context()
    data = require_json()
    result = BudgetCategoryService.validate_percentages(
        ctx, data.get('targetPercentage'), data.get('excludeCategoryId')
    )
    return jsonify({'success': True, **result})


@budgeting_bp.route('/budget-categories/<int:category_id>', methods=['GET'])
@login_required
def get_budget_category(category_id):
    ctx = get_request_context()
    return jsonify({'success': True, 'category': BudgetCategoryService.get(ctx, category_id).to_dict()})


@budgeting_bp.route('/budget-categories/<int:category_id>', methods=['PUT'])
@login_required
def update_budget_category(category_id):
    ctx = get_request_context()
    category = BudgetCategoryService.update(ctx, category_id, require_json())
    return jsonify({'success': True, 'category': category.to_dict()})


@budgeting_bp.route('/budget-categories/<int:category_id>', methods=['DELETE'])
@login_required
def delete_budget_category(category_id):
    """Deletes unused categories, deactivates referenced ones"""
    ctx = get_request_context()
    outcome = BudgetCategoryService.delete(ctx, category_id)
    return jsonify({'success': True, 'result': outcome})


# ============================================================================
# BUDGET ALLOCATIONS
# ============================================================================

@budgeting_bp.route('/budget-allocations', methods=['GET'])
@login_required
def list_budget_allocations():
    ctx = get_request_context()
    income_event_id = parse_int(request.args.get('incomeEventId'), 'incomeEventId')
    allocations = AllocationService.list_allocations(ctx, income_event_id)
    return jsonify({'success': True, 'allocations': [a.to_dict() for a in allocations]})


@budgeting_bp.route('/budget-allocations/<int:income_event_id>/generate', methods=['POST'])
@login_required
def generate_budget_allocations(income_event_id):
    """
    Split an income event across the active categories.
    Body (optional): {"overrides": {"<categoryId>": <percentage>}}
    """
    ctx = get_request_context()
    data = optional_json()
    allocations = AllocationService.allocate(ctx, income_event_id, overrides=data.get('overrides'))
    return jsonify({'success': True, 'allocations': [a.to_dict() for a in allocations]}), 201


@budgeting_bp.route('/budget-allocations/<int:income_event_id>/summary', methods=['GET'])
@login_required
def budget_allocation_summary(income_event_id):
    ctx = get_request_context()
    return jsonify({'success': True, 'summary': AllocationService.summary(ctx, income_event_id)})


@budgeting_bp.route('/budget-allocations/<int:allocation_id>', methods=['PUT'])
@login_required
def update_budget_allocation(allocation_id):
    ctx = get_request_context()
    data = require_json()
    allocation = AllocationService.update_allocation(ctx, allocation_id, data.get('amount'))
    return jsonify({'success': True, 'allocation': allocation.to_dict()})
