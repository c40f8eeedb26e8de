# app/routes/tracker/budgeting/analytics.py - Report endpoints

from flask import jsonify, request
from flask_login import login_required
from app.auth import get_request_context
from app.services.tracker.budgeting import ReportingService
from app.services.validation import parse_int, parse_date_range
from datetime import date
from . import budgeting_bp


@budgeting_bp.route('/reports/monthly-summary')
@login_required
def monthly_summary_report():
    """
    Monthly income, payments and net cash flow.
    Query params: year, month (default: current month)
    """
    ctx = get_request_context()
    today = date.today()
    year = parse_int(request.args.get('year'), 'year', required=False)
    month = parse_int(request.args.get('month'), 'month', required=False)
    if year is None:
        year = today.year
    if month is None:
        month = today.month
    return jsonify({'success': True, 'data': ReportingService.monthly_summary(ctx, year, month)})


@budgeting_bp.route('/reports/annual-summary')
@login_required
def annual_summary_report():
    """Query params: year (default: current year)"""
    ctx = get_request_context()
    year = parse_int(request.args.get('year'), 'year', required=False)
    if year is None:
        year = date.today().year
    return jsonify({'success': True, 'data': ReportingService.annual_summary(ctx, year)})


@budgeting_bp.route('/reports/income-analysis')
@login_required
def income_analysis_report():
    """Query params: startDate, endDate (default: last twelve months)"""
    ctx = get_request_context()
    start_date, end_date = parse_date_range(request.args)
    return jsonify({'success': True, 'data': ReportingService.income_analysis(ctx, start_date, end_date)})


@budgeting_bp.route('/reports/budget-performance')
@login_required
def budget_performance_report():
    """
    Allocated vs spent per budget category.
    Query params: startDate, endDate (default: this month to date), categoryId
    """
    ctx = get_request_context()
    start_date, end_date = parse_date_range(request.args)
    category_id = parse_int(request.args.get('categoryId'), 'categoryId', required=False)
    data = ReportingService.budget_performance(ctx, start_date, end_date, category_id)
    return jsonify({'success': True, 'data': data})
