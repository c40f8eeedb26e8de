# app/services/tracker/budgeting/analytics_service.py - Read-only financial rollups

"""
Reporting Service - aggregation over income events and payments.

This service handles:
- Monthly summaries with month-over-month change
- Annual summaries built from the monthly rows
- Income analysis (regularity, consistency, sources, trends)
- Budget performance (allocated vs attributed per category)

Nothing here writes to the database.
"""

from models import (
    IncomeEvent, IncomeStatus, Payment, PaymentStatus, PaymentAttribution,
    BudgetAllocation, BudgetCategory, ZERO,
    as_float, round_currency, percentage_of,
    get_month_range, iter_months, months_between, calculate_variance, calculate_trend
)
from app.errors import ValidationError, NotFoundError
from sqlalchemy import or_
from datetime import date
from dateutil.relativedelta import relativedelta
from collections import defaultdict
import logging

logger = logging.getLogger(__name__)

# Spent as a share of budgeted, upper bounds per status
PERFORMANCE_BANDS = ((75, 'under_budget'), (100, 'on_track'), (125, 'over_budget'))


class ReportingService:
    """
    Rollups for the reports endpoints.
    All amounts come back as floats rounded to cents.
    """

    @staticmethod
    def _month_totals(ctx, start_date, end_date, today):
        """
        Raw Decimal totals for one period.

        Income is bucketed by scheduled date, payments by due date;
        cancelled rows are ignored.
        """
        events = IncomeEvent.query.filter(
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.status != IncomeStatus.CANCELLED.value,
            IncomeEvent.scheduled_date >= start_date,
            IncomeEvent.scheduled_date <= end_date,
        ).all()
        payments = Payment.query.filter(
            Payment.family_id == ctx.family_id,
            Payment.status != PaymentStatus.CANCELLED.value,
            Payment.due_date >= start_date,
            Payment.due_date <= end_date,
        ).all()

        income_scheduled = income_received = ZERO
        by_source = defaultdict(lambda: {'scheduled': ZERO, 'received': ZERO, 'count': 0})
        for event in events:
            source = by_source[event.source or 'Unspecified']
            source['count'] += 1
            income_scheduled += event.amount
            source['scheduled'] += event.amount
            if event.status == IncomeStatus.RECEIVED.value:
                income_received += event.effective_amount
                source['received'] += event.effective_amount

        payments_due = payments_paid = ZERO
        overdue_count = 0
        by_category = defaultdict(lambda: {'due': ZERO, 'paid': ZERO, 'count': 0})
        for payment in payments:
            name = payment.spending_category.name if payment.spending_category else 'Uncategorized'
            paid = payment.paid_amount or ZERO
            payments_due += payment.amount
            payments_paid += paid
            by_category[name]['due'] += payment.amount
            by_category[name]['paid'] += paid
            by_category[name]['count'] += 1
            if payment.is_overdue(today):
                overdue_count += 1

        return {
            'income_scheduled': income_scheduled,
            'income_received': income_received,
            'payments_due': payments_due,
            'payments_paid': payments_paid,
            'net_cash_flow': income_received - payments_paid,
            'overdue_count': overdue_count,
            'income_count': len(events),
            'payment_count': len(payments),
            'by_source': by_source,
            'by_category': by_category,
        }

    @staticmethod
    def _savings_rate(totals):
        if totals['income_received'] <= 0:
            return 0.0
        return percentage_of(totals['net_cash_flow'], totals['income_received'])

    @staticmethod
    def _change(current, previous):
        change = {'amount': as_float(current - previous)}
        change['percentage'] = percentage_of(current - previous, abs(previous)) if previous else None
        return change

    @staticmethod
    def _validate_period(year, month=None):
        if not 1900 <= year <= 9999:
            raise ValidationError('year is out of range', field='year')
        if month is not None and not 1 <= month <= 12:
            raise ValidationError('month must be between 1 and 12', field='month')

    @staticmethod
    def monthly_summary(ctx, year, month, today=None):
        """
        Income, payments and net cash flow for one calendar month.

        Args:
            ctx: RequestContext
            year: int
            month: int - 1-12
            today: date used for overdue checks (defaults to today)

        Returns:
            dict: summary with a `changes` block against the previous month
        """
        ctx.require('can_view_reports')
        ReportingService._validate_period(year, month)
        today = today or date.today()

        start_date, end_date = get_month_range(year, month)
        totals = ReportingService._month_totals(ctx, start_date, end_date, today)

        previous_start = start_date - relativedelta(months=1)
        prev_start, prev_end = get_month_range(previous_start.year, previous_start.month)
        previous = ReportingService._month_totals(ctx, prev_start, prev_end, today)

        logger.debug(f"[REPORTS] Monthly summary {year}-{month:02d} for family {ctx.family_id}")

        return {
            'period': {
                'year': year,
                'month': month,
                'startDate': start_date.isoformat(),
                'endDate': end_date.isoformat(),
            },
            'income': {
                'scheduled': as_float(totals['income_scheduled']),
                'received': as_float(totals['income_received']),
                'count': totals['income_count'],
                'bySource': [
                    {'source': name, 'scheduled': as_float(v['scheduled']),
                     'received': as_float(v['received']), 'count': v['count']}
                    for name, v in sorted(totals['by_source'].items(),
                                          key=lambda kv: kv[1]['scheduled'], reverse=True)
                ],
            },
            'payments': {
                'due': as_float(totals['payments_due']),
                'paid': as_float(totals['payments_paid']),
                'count': totals['payment_count'],
                'overdueCount': totals['overdue_count'],
                'byCategory': [
                    {'category': name, 'due': as_float(v['due']),
                     'paid': as_float(v['paid']), 'count': v['count']}
                    for name, v in sorted(totals['by_category'].items(),
                                          key=lambda kv: kv[1]['due'], reverse=True)
                ],
            },
            'netCashFlow': as_float(totals['net_cash_flow']),
            'savingsRate': ReportingService._savings_rate(totals),
            'changes': {
                'incomeReceived': ReportingService._change(totals['income_received'], previous['income_received']),
                'paymentsPaid': ReportingService._change(totals['payments_paid'], previous['payments_paid']),
                'netCashFlow': ReportingService._change(totals['net_cash_flow'], previous['net_cash_flow']),
            },
        }

    @staticmethod
    def annual_summary(ctx, year, today=None):
        """Twelve monthly rows plus yearly totals and best/worst month"""
        ctx.require('can_view_reports')
        ReportingService._validate_period(year)
        today = today or date.today()

        months = []
        income_received = payments_paid = income_scheduled = payments_due = ZERO
        for month in range(1, 13):
            start_date, end_date = get_month_range(year, month)
            totals = ReportingService._month_totals(ctx, start_date, end_date, today)
            income_scheduled += totals['income_scheduled']
            income_received += totals['income_received']
            payments_due += totals['payments_due']
            payments_paid += totals['payments_paid']
            months.append({
                'month': month,
                'incomeScheduled': as_float(totals['income_scheduled']),
                'incomeReceived': as_float(totals['income_received']),
                'paymentsDue': as_float(totals['payments_due']),
                'paymentsPaid': as_float(totals['payments_paid']),
                'netCashFlow': as_float(totals['net_cash_flow']),
                'savingsRate': ReportingService._savings_rate(totals),
            })

        net = income_received - payments_paid
        best = max(months, key=lambda m: m['netCashFlow'])
        worst = min(months, key=lambda m: m['netCashFlow'])

        return {
            'year': year,
            'months': months,
            'totals': {
                'incomeScheduled': as_float(income_scheduled),
                'incomeReceived': as_float(income_received),
                'paymentsDue': as_float(payments_due),
                'paymentsPaid': as_float(payments_paid),
                'netCashFlow': as_float(net),
                'savingsRate': percentage_of(net, income_received) if income_received > 0 else 0.0,
            },
            'averageMonthlyNet': as_float(round_currency(net / 12)),
            'bestMonth': {'month': best['month'], 'netCashFlow': best['netCashFlow']},
            'worstMonth': {'month': worst['month'], 'netCashFlow': worst['netCashFlow']},
        }

    @staticmethod
    def income_analysis(ctx, start_date=None, end_date=None):
        """
        How regular and consistent the family's income is over a range.

        Defaults to the twelve months ending this month. Uses the actual
        amount for received events and the expected amount otherwise.
        """
        ctx.require('can_view_reports')
        if end_date is None:
            today = date.today()
            end_date = get_month_range(today.year, today.month)[1]
        if start_date is None:
            first = end_date - relativedelta(months=11)
            start_date = date(first.year, first.month, 1)
        if start_date > end_date:
            raise ValidationError('startDate must be on or before endDate', field='startDate')

        events = IncomeEvent.query.filter(
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.status != IncomeStatus.CANCELLED.value,
            IncomeEvent.scheduled_date >= start_date,
            IncomeEvent.scheduled_date <= end_date,
        ).order_by(IncomeEvent.scheduled_date).all()

        monthly = {(y, m): {'total': ZERO, 'count': 0} for y, m in iter_months(start_date, end_date)}
        sources = defaultdict(lambda: {'total': ZERO, 'count': 0, 'frequencies': set()})
        total = regular = irregular = ZERO

        for event in events:
            amount = event.effective_amount
            total += amount
            if event.is_recurring():
                regular += amount
            else:
                irregular += amount

            bucket = monthly[(event.scheduled_date.year, event.scheduled_date.month)]
            bucket['total'] += amount
            bucket['count'] += 1

            source = sources[event.source or 'Unspecified']
            source['total'] += amount
            source['count'] += 1
            source['frequencies'].add(event.frequency)

        monthly_totals = [v['total'] for v in monthly.values()]
        mean, std_dev, cv = calculate_variance(monthly_totals)
        consistency = max(0.0, min(100.0, 100 - cv)) if total > 0 else 0.0

        return {
            'period': {'startDate': start_date.isoformat(), 'endDate': end_date.isoformat()},
            'totalIncome': as_float(total),
            'regularIncome': as_float(regular),
            'irregularIncome': as_float(irregular),
            'regularPercentage': percentage_of(regular, total),
            'averageMonthlyIncome': as_float(round_currency(total / months_between(start_date, end_date))),
            'consistencyScore': round(consistency, 2),
            'standardDeviation': round(std_dev, 2),
            'trend': calculate_trend(monthly_totals),
            'sources': [
                {
                    'source': name,
                    'total': as_float(v['total']),
                    'count': v['count'],
                    'percentage': percentage_of(v['total'], total),
                    'frequencies': sorted(v['frequencies']),
                }
                for name, v in sorted(sources.items(), key=lambda kv: kv[1]['total'], reverse=True)
            ],
            'monthlyTrends': [
                {'month': f'{y}-{m:02d}', 'total': as_float(v['total']), 'count': v['count']}
                for (y, m), v in monthly.items()
            ],
        }

    @staticmethod
    def _performance_status(budgeted, spent, performance):
        if budgeted <= 0:
            return 'way_over_budget' if spent > 0 else 'under_budget'
        for limit, status in PERFORMANCE_BANDS:
            if performance <= limit:
                return status
        return 'way_over_budget'

    @staticmethod
    def budget_performance(ctx, start_date=None, end_date=None, category_id=None):
        """
        Allocated vs spent per budget category over a date range.

        Budgeted is the allocations of income events scheduled in the range.
        Spent is what those same events have been attributed to payments in
        each category. Cancelled income counts for neither. Defaults to the
        current month up to today.

        Args:
            ctx: RequestContext
            start_date, end_date: date or None
            category_id: limits `categoryPerformance` to one category; totals
                and insights still cover every category

        Returns:
            dict: overallPerformance, insights, categoryPerformance,
                monthlyTrends, recommendations
        """
        ctx.require('can_view_reports')
        today = date.today()
        if start_date is None:
            start_date = date(today.year, today.month, 1)
        if end_date is None:
            end_date = max(today, start_date)
        if start_date > end_date:
            raise ValidationError('startDate must be on or before endDate', field='startDate')

        in_range = (
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.status != IncomeStatus.CANCELLED.value,
            IncomeEvent.scheduled_date >= start_date,
            IncomeEvent.scheduled_date <= end_date,
        )
        allocations = BudgetAllocation.query.join(BudgetAllocation.income_event) \
            .filter(BudgetAllocation.family_id == ctx.family_id, *in_range).all()
        attributions = PaymentAttribution.query.join(PaymentAttribution.income_event) \
            .filter(PaymentAttribution.family_id == ctx.family_id, *in_range).all()

        months = {(y, m): {'budgeted': ZERO, 'spent': ZERO} for y, m in iter_months(start_date, end_date)}
        budgeted = defaultdict(lambda: ZERO)
        spent = defaultdict(lambda: ZERO)
        unbudgeted_spent = ZERO

        for allocation in allocations:
            budgeted[allocation.budget_category_id] += allocation.amount
            scheduled = allocation.income_event.scheduled_date
            months[(scheduled.year, scheduled.month)]['budgeted'] += allocation.amount

        for attribution in attributions:
            scheduled = attribution.income_event.scheduled_date
            category = attribution.payment.spending_category_id
            if category is None:
                unbudgeted_spent += attribution.amount
                continue
            spent[category] += attribution.amount
            months[(scheduled.year, scheduled.month)]['spent'] += attribution.amount

        # Active categories, plus retired ones that still carry money in range
        category_ids = set(budgeted) | set(spent)
        categories = BudgetCategory.query.filter(
            BudgetCategory.family_id == ctx.family_id,
            or_(BudgetCategory.is_active.is_(True), BudgetCategory.id.in_(sorted(category_ids)))
        ).all()
        if category_id is not None and category_id not in {c.id for c in categories}:
            raise NotFoundError(f'Budget category {category_id} not found')

        rows = []
        for category in categories:
            category_budgeted = round_currency(budgeted[category.id])
            category_spent = round_currency(spent[category.id])
            performance = percentage_of(category_spent, category_budgeted)
            rows.append({
                'categoryId': category.id,
                'categoryName': category.name,
                'isActive': category.is_active,
                'budgeted': as_float(category_budgeted),
                'spent': as_float(category_spent),
                'remaining': as_float(category_budgeted - category_spent),
                'performancePercentage': performance,
                'status': ReportingService._performance_status(category_budgeted, category_spent, performance),
            })
        rows.sort(key=lambda r: (-r['spent'], r['categoryName']))

        total_budgeted = sum(budgeted.values(), ZERO)
        total_spent = sum(spent.values(), ZERO)
        if total_budgeted > 0:
            overspend = percentage_of(total_spent - total_budgeted, total_budgeted)
            score = max(0.0, min(100.0, 100 - overspend))
        else:
            score = 0.0 if total_spent > 0 else 100.0

        over = [r for r in rows if r['status'] in ('over_budget', 'way_over_budget')]
        under = [r for r in rows if r['status'] == 'under_budget']
        on_track = [r for r in rows if r['status'] == 'on_track']

        recommendations = []
        if over:
            recommendations.append({
                'type': 'warning',
                'message': f'{len(over)} categories are over budget',
                'categories': [r['categoryName'] for r in over],
            })
        if score < 70:
            recommendations.append({
                'type': 'alert',
                'message': 'Overall budget performance is below target',
                'score': score,
            })
        if rows and len(under) > len(rows) / 2:
            recommendations.append({
                'type': 'info',
                'message': 'More than half of categories are under budget; consider reallocating',
                'categories': [r['categoryName'] for r in under][:3],
            })

        logger.debug(f"[REPORTS] Budget performance {start_date}..{end_date} for family {ctx.family_id}: "
                     f"${total_spent} of ${total_budgeted}")

        return {
            'period': {'startDate': start_date.isoformat(), 'endDate': end_date.isoformat()},
            'overallPerformance': {
                'totalBudgeted': as_float(total_budgeted),
                'totalSpent': as_float(total_spent),
                'remainingBudget': as_float(total_budgeted - total_spent),
                'unbudgetedSpent': as_float(unbudgeted_spent),
                'utilizationRate': percentage_of(total_spent, total_budgeted),
                'performanceScore': round(score, 2),
            },
            'insights': {
                'averagePerformance': round(sum(r['performancePercentage'] for r in rows) / max(1, len(rows)), 2),
                'categoriesOverBudget': len(over),
                'categoriesUnderBudget': len(under),
                'categoriesOnTrack': len(on_track),
                'topOverspendingCategory': max(over, key=lambda r: r['performancePercentage'])
                if over else None,
            },
            'categoryPerformance': [r for r in rows if category_id is None or r['categoryId'] == category_id],
            'monthlyTrends': [
                {
                    'month': f'{y}-{m:02d}',
                    'budgeted': as_float(v['budgeted']),
                    'spent': as_float(v['spent']),
                    'performancePercentage': percentage_of(v['spent'], v['budgeted']),
                }
                for (y, m), v in months.items()
            ],
            'filters': {'categoryId': category_id},
        }
