from decimal import Decimal

import pytest

from app.errors import (
    ValidationError, NotFoundError, ForbiddenError, BudgetPercentageExceeded, DuplicateCategoryName
)
from app.services.tracker.category_service import BudgetCategoryService
from app.services.tracker.payment_service import PaymentService
from models import db, BudgetCategory


def _create(ctx, name, pct, **extra):
    return BudgetCategoryService.create(ctx, dict(name=name, targetPercentage=pct, **extra))


class TestBudgetCategoryService:

    def test_create_defaults(self, app_context, editor_ctx):
        category = _create(editor_ctx, 'Housing', 30)
        assert category.target_percentage == Decimal('30.00')
        assert category.color == '#6B7280'
        assert category.sort_order == 0
        assert category.is_active is True

        second = _create(editor_ctx, 'Food', 15, color='#22aa44')
        assert second.sort_order == 1
        assert second.color == '#22AA44'

    def test_total_may_not_exceed_100(self, app_context, editor_ctx):
        first = _create(editor_ctx, 'A', 60)
        _create(editor_ctx, 'B', 40)

        with pytest.raises(BudgetPercentageExceeded):
            _create(editor_ctx, 'C', 10)
        db.session.rollback()

        BudgetCategoryService.update(editor_ctx, first.id, {'targetPercentage': 50})
        _create(editor_ctx, 'C', 10)

        summary = BudgetCategoryService.list_categories(editor_ctx)
        assert summary['totalPercentage'] == 100.0
        assert summary['isComplete'] is True

    def test_zero_percentage_fits_full_budget(self, app_context, editor_ctx):
        _create(editor_ctx, 'A', 60)
        _create(editor_ctx, 'B', 40)
        category = _create(editor_ctx, 'Buffer', 0)
        assert category.target_percentage == Decimal('0.00')

    def test_inactive_categories_do_not_count(self, app_context, editor_ctx):
        _create(editor_ctx, 'A', 80)
        _create(editor_ctx, 'Parked', 50, isActive=False)

        with pytest.raises(BudgetPercentageExceeded):
            parked = BudgetCategory.query.filter_by(name='Parked').one()
            BudgetCategoryService.update(editor_ctx, parked.id, {'isActive': True})

    @pytest.mark.parametrize('pct', [-1, 100.01, 'half', 1e30, '-1e30'])
    def test_percentage_bounds(self, app_context, editor_ctx, pct):
        with pytest.raises(ValidationError) as exc:
            _create(editor_ctx, 'Odd', pct)
        assert exc.value.field == 'targetPercentage'

    def test_bad_color(self, app_context, editor_ctx):
        with pytest.raises(ValidationError) as exc:
            _create(editor_ctx, 'Odd', 5, color='red')
        assert exc.value.field == 'color'

    def test_duplicate_name_ignores_case(self, app_context, editor_ctx):
        _create(editor_ctx, 'Groceries', 10)
        with pytest.raises(DuplicateCategoryName):
            _create(editor_ctx, 'groceries', 5)

    def test_rename_to_existing_name_fails(self, app_context, editor_ctx):
        _create(editor_ctx, 'Groceries', 10)
        fun = _create(editor_ctx, 'Fun', 5)
        with pytest.raises(DuplicateCategoryName):
            BudgetCategoryService.update(editor_ctx, fun.id, {'name': 'GROCERIES'})

    def test_same_name_in_other_family_is_fine(self, app_context, editor_ctx, other_ctx):
        _create(editor_ctx, 'Groceries', 10)
        category = _create(other_ctx, 'Groceries', 10)
        assert category.family_id == other_ctx.family_id

    def test_viewer_cannot_manage(self, app_context, viewer_ctx):
        with pytest.raises(ForbiddenError):
            _create(viewer_ctx, 'Housing', 30)

    def test_delete_unreferenced_removes_row(self, app_context, editor_ctx):
        category = _create(editor_ctx, 'Temp', 5)
        assert BudgetCategoryService.delete(editor_ctx, category.id) == 'deleted'
        with pytest.raises(NotFoundError):
            BudgetCategoryService.get(editor_ctx, category.id)

    def test_delete_referenced_deactivates(self, app_context, editor_ctx):
        category = _create(editor_ctx, 'Housing', 30)
        PaymentService.create(editor_ctx, {
            'payee': 'Landlord', 'amount': 1500, 'dueDate': '2024-06-01', 'spendingCategoryId': category.id
        })

        assert BudgetCategoryService.delete(editor_ctx, category.id) == 'deactivated'
        category = BudgetCategoryService.get(editor_ctx, category.id)
        assert category.is_active is False
        assert BudgetCategoryService.list_categories(editor_ctx)['totalPercentage'] == 0.0

    def test_list_excludes_inactive_by_default(self, app_context, editor_ctx):
        _create(editor_ctx, 'Active', 20)
        _create(editor_ctx, 'Dormant', 20, isActive=False)

        summary = BudgetCategoryService.list_categories(editor_ctx)
        assert [c['name'] for c in summary['categories']] == ['Active']
        assert summary['remainingPercentage'] == 80.0
        assert summary['isComplete'] is False

        everything = BudgetCategoryService.list_categories(editor_ctx, include_inactive=True)
        assert len(everything['categories']) == 2

    def test_validate_percentages(self, app_context, editor_ctx):
        first = _create(editor_ctx, 'A', 60)
        _create(editor_ctx, 'B', 30)

        result = BudgetCategoryService.validate_percentages(editor_ctx, 20)
        assert result == {'valid': False, 'currentTotal': 90.0, 'proposedTotal': 110.0, 'remainingPercentage': 10.0}

        result = BudgetCategoryService.validate_percentages(editor_ctx, 70, exclude_category_id=first.id)
        assert result['valid'] is True
        assert result['currentTotal'] == 30.0

        # Nothing is written by a dry run
        assert BudgetCategory.query.count() == 2


class TestBudgetCategoryApi:

    def test_create_list_and_limit(self, client, admin_headers):
        response = client.post('/budget-categories', json={'name': 'A', 'targetPercentage': 60},
                               headers=admin_headers)
        assert response.status_code == 201
        assert response.get_json()['category']['targetPercentage'] == 60.0

        client.post('/budget-categories', json={'name': 'B', 'targetPercentage': 40}, headers=admin_headers)
        response = client.post('/budget-categories', json={'name': 'C', 'targetPercentage': 10},
                               headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'BUDGET_PERCENTAGE_EXCEEDED'

        body = client.get('/budget-categories', headers=admin_headers).get_json()
        assert body['totalPercentage'] == 100.0
        assert body['isComplete'] is True

    def test_oversized_percentage_is_400(self, client, admin_headers):
        response = client.post('/budget-categories', json={'name': 'Huge', 'targetPercentage': 1e30},
                               headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()['field'] == 'targetPercentage'

    def test_duplicate_is_409(self, client, admin_headers):
        client.post('/budget-categories', json={'name': 'Savings', 'targetPercentage': 10}, headers=admin_headers)
        response = client.post('/budget-categories', json={'name': 'SAVINGS', 'targetPercentage': 10},
                               headers=admin_headers)
        assert response.status_code == 409
        assert response.get_json()['code'] == 'DUPLICATE_CATEGORY_NAME'

    def test_validate_percentages_endpoint(self, client, admin_headers):
        client.post('/budget-categories', json={'name': 'A', 'targetPercentage': 75}, headers=admin_headers)
        body = client.post('/budget-categories/validate-percentages', json={'targetPercentage': 25},
                           headers=admin_headers).get_json()
        assert body['valid'] is True
        assert body['proposedTotal'] == 100.0

    def test_update_and_delete(self, client, admin_headers):
        category = client.post('/budget-categories', json={'name': 'Fun', 'targetPercentage': 5},
                               headers=admin_headers).get_json()['category']

        response = client.put(f"/budget-categories/{category['id']}", json={'sortOrder': 7, 'color': '#000000'},
                              headers=admin_headers)
        assert response.status_code == 200
        assert response.get_json()['category']['sortOrder'] == 7

        response = client.delete(f"/budget-categories/{category['id']}", headers=admin_headers)
        assert response.get_json()['result'] == 'deleted'
        assert client.get(f"/budget-categories/{category['id']}", headers=admin_headers).status_code == 404

    def test_viewer_forbidden(self, client, viewer_headers):
        response = client.post('/budget-categories', json={'name': 'A', 'targetPercentage': 5},
                               headers=viewer_headers)
        assert response.status_code == 403
        assert client.get('/budget-categories', headers=viewer_headers).status_code == 200
