# app/services/tracker/category_service.py - Budget category store

from sqlalchemy import func
from models import db, BudgetCategory, BudgetAllocation, Payment, ZERO, as_float, round_currency
from app.errors import (
    ValidationError, NotFoundError, BudgetPercentageExceeded, DuplicateCategoryName
)
from app.services.audit_service import AuditService
from app.services.transaction import commit_or_conflict
from app.services.validation import (
    parse_string, parse_percentage, parse_color, parse_int, parse_bool, reject_unknown_fields
)
import logging

logger = logging.getLogger(__name__)

CATEGORY_FIELDS = ('name', 'targetPercentage', 'color', 'sortOrder', 'isActive')
DEFAULT_COLOR = '#6B7280'
MAX_TOTAL_PERCENTAGE = 100


class BudgetCategoryService:

    @staticmethod
    def get_all(ctx, include_inactive=False):
        query = BudgetCategory.query.filter_by(family_id=ctx.family_id)
        if not include_inactive:
            query = query.filter_by(is_active=True)
        return query.order_by(BudgetCategory.sort_order, BudgetCategory.id).all()

    @staticmethod
    def get(ctx, category_id):
        category = BudgetCategory.query.filter_by(id=category_id, family_id=ctx.family_id).first()
        if not category:
            raise NotFoundError(f'Budget category {category_id} not found')
        return category

    @staticmethod
    def _active_total(ctx, exclude_id=None, lock=False):
        """Sum of active percentages, optionally locking those rows first"""
        query = BudgetCategory.query.filter_by(family_id=ctx.family_id, is_active=True)
        if exclude_id is not None:
            query = query.filter(BudgetCategory.id != exclude_id)
        if lock:
            query = query.with_for_update()
        return round_currency(sum((c.target_percentage for c in query.all()), ZERO))

    @staticmethod
    def _check_total(ctx, percentage, exclude_id=None):
        current = BudgetCategoryService._active_total(ctx, exclude_id=exclude_id, lock=True)
        proposed = current + percentage
        if proposed > MAX_TOTAL_PERCENTAGE:
            logger.warning(f"[CATEGORY] Refused: family {ctx.family_id} would reach {proposed}%")
            raise BudgetPercentageExceeded(
                f"Active categories would total {proposed}%, which exceeds 100% "
                f"({MAX_TOTAL_PERCENTAGE - current}% available)",
                field='targetPercentage'
            )

    @staticmethod
    def _check_name(ctx, name, exclude_id=None):
        """Names are unique per family regardless of case or active flag"""
        query = BudgetCategory.query.filter(
            BudgetCategory.family_id == ctx.family_id,
            func.lower(BudgetCategory.name) == name.lower()
        )
        if exclude_id is not None:
            query = query.filter(BudgetCategory.id != exclude_id)
        if query.first():
            raise DuplicateCategoryName(f"Category '{name}' already exists", field='name')

    @staticmethod
    def create(ctx, data):
        ctx.require('can_manage_budget')
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        reject_unknown_fields(data, CATEGORY_FIELDS)

        name = parse_string(data.get('name'), 'name', max_length=100)
        percentage = parse_percentage(data.get('targetPercentage'))
        color = parse_color(data.get('color')) or DEFAULT_COLOR
        sort_order = parse_int(data.get('sortOrder'), 'sortOrder', required=False, minimum=0)
        is_active = parse_bool(data.get('isActive'), 'isActive', default=True)

        BudgetCategoryService._check_name(ctx, name)
        if is_active:
            BudgetCategoryService._check_total(ctx, percentage)

        if sort_order is None:
            highest = db.session.query(func.max(BudgetCategory.sort_order)) \
                .filter(BudgetCategory.family_id == ctx.family_id).scalar()
            sort_order = 0 if highest is None else highest + 1

        category = BudgetCategory(
            family_id=ctx.family_id,
            name=name,
            target_percentage=percentage,
            color=color,
            sort_order=sort_order,
            is_active=is_active,
        )
        db.session.add(category)
        db.session.flush()
        AuditService.record(ctx, 'create', 'budget_category', category.id, None, category.to_dict())
        commit_or_conflict('CREATE_CATEGORY')
        logger.info(f"[CREATE_CATEGORY] '{name}' {percentage}% for family {ctx.family_id}")
        return category

    @staticmethod
    def update(ctx, category_id, patch):
        ctx.require('can_manage_budget')
        if not isinstance(patch, dict) or not patch:
            raise ValidationError('No fields to update')
        reject_unknown_fields(patch, CATEGORY_FIELDS)

        category = BudgetCategoryService.get(ctx, category_id)
        old_values = category.to_dict()

        name = category.name
        if 'name' in patch:
            name = parse_string(patch['name'], 'name', max_length=100)
            BudgetCategoryService._check_name(ctx, name, exclude_id=category.id)

        percentage = category.target_percentage
        if 'targetPercentage' in patch:
            percentage = parse_percentage(patch['targetPercentage'])

        is_active = category.is_active
        if 'isActive' in patch:
            is_active = parse_bool(patch['isActive'], 'isActive')

        if is_active and ('targetPercentage' in patch or not category.is_active):
            BudgetCategoryService._check_total(ctx, percentage, exclude_id=category.id)

        category.name = name
        category.target_percentage = percentage
        category.is_active = is_active
        if 'color' in patch:
            category.color = parse_color(patch['color'], required=True)
        if 'sortOrder' in patch:
            category.sort_order = parse_int(patch['sortOrder'], 'sortOrder', minimum=0)

        AuditService.record(ctx, 'update', 'budget_category', category.id, old_values, category.to_dict())
        commit_or_conflict('UPDATE_CATEGORY')
        logger.info(f"[UPDATE_CATEGORY] Category {category.id} updated fields {sorted(patch)}")
        return category

    @staticmethod
    def is_referenced(category):
        """True when allocations or payments point at the category"""
        if BudgetAllocation.query.filter_by(budget_category_id=category.id).first():
            return True
        return Payment.query.filter_by(spending_category_id=category.id).first() is not None

    @staticmethod
    def delete(ctx, category_id):
        """
        Remove a category.

        Returns:
            str: 'deleted' when the row was removed, 'deactivated' when it is
            still referenced and was only switched off
        """
        ctx.require('can_manage_budget')
        category = BudgetCategoryService.get(ctx, category_id)
        old_values = category.to_dict()

        if BudgetCategoryService.is_referenced(category):
            category.is_active = False
            AuditService.record(ctx, 'update', 'budget_category', category.id, old_values, category.to_dict())
            commit_or_conflict('DELETE_CATEGORY')
            logger.info(f"[DELETE_CATEGORY] Category {category.id} is referenced, deactivated instead")
            return 'deactivated'

        db.session.delete(category)
        AuditService.record(ctx, 'delete', 'budget_category', category_id, old_values, None)
        commit_or_conflict('DELETE_CATEGORY')
        logger.info(f"[DELETE_CATEGORY] Category {category_id} deleted")
        return 'deleted'

    @staticmethod
    def list_categories(ctx, include_inactive=False):
        categories = BudgetCategoryService.get_all(ctx, include_inactive=include_inactive)
        total = BudgetCategoryService._active_total(ctx)
        return {
            'categories': [c.to_dict() for c in categories],
            'totalPercentage': as_float(total),
            'isComplete': total == MAX_TOTAL_PERCENTAGE,
            'remainingPercentage': as_float(max(ZERO, MAX_TOTAL_PERCENTAGE - total)),
        }

    @staticmethod
    def validate_percentages(ctx, target_percentage, exclude_category_id=None):
        """Dry run of the 100% rule for a proposed percentage"""
        percentage = parse_percentage(target_percentage)
        exclude_id = parse_int(exclude_category_id, 'excludeCategoryId', required=False)
        current = BudgetCategoryService._active_total(ctx, exclude_id=exclude_id)
        proposed = current + percentage
        return {
            'valid': proposed <= MAX_TOTAL_PERCENTAGE,
            'currentTotal': as_float(current),
            'proposedTotal': as_float(proposed),
            'remainingPercentage': as_float(max(ZERO, MAX_TOTAL_PERCENTAGE - current)),
        }
