from decimal import Decimal

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.errors import (
    ValidationError, ConflictError, BudgetPercentageExceeded,
    InsufficientRemainingIncome, PaymentAlreadySettled
)
from app.services.tracker.income_allocation import AllocationService
from app.services.tracker.income_service import IncomeEventService
from app.services.tracker.payment_service import PaymentService
from app.services.tracker.category_service import BudgetCategoryService
from app.services.transaction import commit_or_conflict
from models import db, IncomeEvent, PaymentAttribution, BudgetAllocation


def _income(ctx, amount='2000.00', scheduled='2024-06-01', name='Salary'):
    return IncomeEventService.create(ctx, {
        'name': name, 'amount': amount, 'scheduledDate': scheduled, 'frequency': 'once'
    })


def _payment(ctx, amount, due='2024-06-05', payee='Landlord', **extra):
    return PaymentService.create(ctx, dict(payee=payee, amount=amount, dueDate=due, **extra))


def _category(ctx, name, pct):
    return BudgetCategoryService.create(ctx, {'name': name, 'targetPercentage': pct})


def _event(event_id):
    return db.session.get(IncomeEvent, event_id)


# ============================================================================
# ALLOCATIONS
# ============================================================================

class TestComputeAllocations:

    def test_shares_round_half_up(self):
        shares = AllocationService.compute_allocations(
            Decimal('100.01'), [('a', Decimal('33.33')), ('b', Decimal('33.33')), ('c', Decimal('33.34'))]
        )
        assert [s[2] for s in shares] == [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]

    def test_rounding_excess_is_taken_from_last_share(self):
        shares = AllocationService.compute_allocations(
            Decimal('0.05'), [('a', Decimal('33.33')), ('b', Decimal('33.33')), ('c', Decimal('33.34'))]
        )
        amounts = [s[2] for s in shares]
        assert amounts == [Decimal('0.02'), Decimal('0.02'), Decimal('0.01')]
        assert sum(amounts) <= Decimal('0.05')

    @pytest.mark.parametrize('amount', ['0.01', '0.07', '99.99', '1234.57', '2500.00'])
    def test_total_never_exceeds_income(self, amount):
        percentages = [(i, Decimal(p)) for i, p in enumerate(['12.5', '12.5', '25', '16.67', '16.67', '16.66'])]
        shares = AllocationService.compute_allocations(Decimal(amount), percentages)
        assert sum(s[2] for s in shares) <= Decimal(amount)
        assert all(s[2] >= 0 for s in shares)


class TestAllocationService:

    def test_allocate_across_active_categories(self, app_context, editor_ctx):
        _category(editor_ctx, 'Housing', 50)
        _category(editor_ctx, 'Food', 30)
        dormant = _category(editor_ctx, 'Travel', 10)
        BudgetCategoryService.update(editor_ctx, dormant.id, {'isActive': False})
        event = _income(editor_ctx)

        allocations = AllocationService.allocate(editor_ctx, event.id)

        assert [(a.budget_category.name, a.amount) for a in allocations] == [
            ('Housing', Decimal('1000.00')), ('Food', Decimal('600.00'))
        ]

    def test_allocate_with_overrides(self, app_context, editor_ctx):
        housing = _category(editor_ctx, 'Housing', 50)
        food = _category(editor_ctx, 'Food', 30)
        event = _income(editor_ctx)

        allocations = AllocationService.allocate(editor_ctx, event.id, {str(food.id): 40})
        amounts = {a.budget_category_id: a.amount for a in allocations}
        assert amounts == {housing.id: Decimal('1000.00'), food.id: Decimal('800.00')}

    def test_overrides_over_100_are_rejected(self, app_context, editor_ctx):
        _category(editor_ctx, 'Housing', 50)
        food = _category(editor_ctx, 'Food', 30)
        event = _income(editor_ctx)

        with pytest.raises(BudgetPercentageExceeded):
            AllocationService.allocate(editor_ctx, event.id, {str(food.id): 60})
        assert BudgetAllocation.query.count() == 0

    def test_allocate_twice_conflicts(self, app_context, editor_ctx):
        _category(editor_ctx, 'Housing', 50)
        event = _income(editor_ctx)
        AllocationService.allocate(editor_ctx, event.id)

        with pytest.raises(ConflictError) as exc:
            AllocationService.allocate(editor_ctx, event.id)
        assert exc.value.code == 'ALLOCATIONS_EXIST'

    def test_allocate_without_categories(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        with pytest.raises(ValidationError) as exc:
            AllocationService.allocate(editor_ctx, event.id)
        assert exc.value.code == 'NO_ACTIVE_CATEGORIES'

    def test_update_allocation_within_income(self, app_context, editor_ctx):
        _category(editor_ctx, 'Housing', 50)
        _category(editor_ctx, 'Food', 30)
        event = _income(editor_ctx)
        housing, food = AllocationService.allocate(editor_ctx, event.id)

        allocation = AllocationService.update_allocation(editor_ctx, food.id, 1000)
        assert allocation.amount == Decimal('1000.00')
        assert allocation.percentage == Decimal('50.00')

        with pytest.raises(ValidationError) as exc:
            AllocationService.update_allocation(editor_ctx, food.id, '1000.01')
        assert exc.value.code == 'ALLOCATION_EXCEEDS_INCOME'

    def test_summary_tracks_spending_per_category(self, app_context, editor_ctx):
        housing = _category(editor_ctx, 'Housing', 50)
        _category(editor_ctx, 'Food', 30)
        event = _income(editor_ctx)
        AllocationService.allocate(editor_ctx, event.id)
        payment = _payment(editor_ctx, 300, spendingCategoryId=housing.id)
        AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 300)

        summary = AllocationService.summary(editor_ctx, event.id)

        assert summary['totalAllocated'] == 1600.0
        assert summary['totalSpent'] == 300.0
        assert summary['unallocatedAmount'] == 400.0
        assert summary['allocationPercentage'] == 80.0
        housing_row = summary['allocations'][0]
        assert housing_row['spent'] == 300.0
        assert housing_row['remaining'] == 700.0

    def test_summary_without_allocations(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        summary = AllocationService.summary(editor_ctx, event.id)
        assert summary['allocationPercentage'] == 0.0
        assert summary['unallocatedAmount'] == 2000.0


# ============================================================================
# ATTRIBUTIONS
# ============================================================================

class TestAttributions:

    def test_attribute_moves_balance(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 750)

        attribution = AllocationService.attribute_payment(editor_ctx, event.id, payment.id, '750.00')

        assert attribution.attribution_type == 'manual'
        assert attribution.created_by == editor_ctx.user_id
        event = _event(event.id)
        assert event.allocated_amount == Decimal('750.00')
        assert event.remaining_amount == Decimal('1250.00')

    def test_attribute_more_than_remaining_conflicts(self, app_context, editor_ctx):
        event = _income(editor_ctx, amount=500)
        payment = _payment(editor_ctx, 800)

        with pytest.raises(InsufficientRemainingIncome) as exc:
            AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 800)
        assert exc.value.status_code == 409
        assert _event(event.id).remaining_amount == Decimal('500.00')

    def test_second_attribution_sees_first(self, app_context, editor_ctx):
        event = _income(editor_ctx, amount=1000)
        first = _payment(editor_ctx, 800, payee='Landlord')
        second = _payment(editor_ctx, 800, payee='Car loan')

        AllocationService.attribute_payment(editor_ctx, event.id, first.id, 800)
        with pytest.raises(InsufficientRemainingIncome):
            AllocationService.attribute_payment(editor_ctx, event.id, second.id, 800)

        event = _event(event.id)
        assert event.remaining_amount == Decimal('200.00')
        assert PaymentAttribution.query.count() == 1

    def test_attribution_cannot_exceed_payment(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 100)
        with pytest.raises(ValidationError):
            AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 150)

    def test_settled_payment_cannot_be_attributed(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 100)
        PaymentService.mark_paid(editor_ctx, payment.id)
        with pytest.raises(PaymentAlreadySettled):
            AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 100)

    def test_cancelled_income_cannot_be_attributed(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        IncomeEventService.cancel(editor_ctx, event.id)
        payment = _payment(editor_ctx, 100)
        with pytest.raises(ValidationError):
            AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 100)

    def test_concurrent_modification_is_a_conflict(self, app_context, editor_ctx, monkeypatch):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 100)

        def stale_commit():
            raise StaleDataError('income_event row was updated by another transaction')

        monkeypatch.setattr(db.session, 'commit', stale_commit)
        with pytest.raises(ConflictError) as exc:
            AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 100)
        monkeypatch.undo()

        assert exc.value.code == 'CONCURRENT_MODIFICATION'
        assert PaymentAttribution.query.count() == 0
        assert _event(event.id).remaining_amount == Decimal('2000.00')

    def test_stale_event_write_is_detected_by_version(self, app_context, editor_ctx):
        event = _income(editor_ctx, amount=1000)
        payment = _payment(editor_ctx, 800)

        other = Session(bind=db.engine)
        stale = other.get(IncomeEvent, event.id)
        assert stale.remaining_amount == Decimal('1000.00')

        AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 800)

        stale.allocated_amount = Decimal('800.00')
        stale.recalculate_remaining()
        with pytest.raises(StaleDataError):
            other.commit()
        other.rollback()
        other.close()

        event = _event(event.id)
        assert event.remaining_amount == Decimal('200.00')
        assert PaymentAttribution.query.count() == 1

    def test_write_over_newer_version_is_a_conflict(self, app_context, editor_ctx):
        event = _event(_income(editor_ctx, amount=1000).id)
        assert event.remaining_amount == Decimal('1000.00')

        other = Session(bind=db.engine)
        winner = other.get(IncomeEvent, event.id)
        winner.allocated_amount = Decimal('300.00')
        winner.recalculate_remaining()
        other.commit()
        other.close()

        event.name = 'Renamed'
        with pytest.raises(ConflictError) as exc:
            commit_or_conflict('RENAME')
        assert exc.value.code == 'CONCURRENT_MODIFICATION'
        assert _event(event.id).remaining_amount == Decimal('700.00')
        assert _event(event.id).name == 'Salary'

    def test_attribution_rereads_payment_attributions(self, app_context, editor_ctx):
        first = _income(editor_ctx, amount=1000, name='Salary')
        second = _income(editor_ctx, amount=1000, name='Bonus')
        payment = PaymentService.get(editor_ctx, _payment(editor_ctx, 800).id)
        assert payment.attributions == []

        # Another request covers the payment from the first event
        other = Session(bind=db.engine)
        covered = other.get(IncomeEvent, first.id)
        covered.allocated_amount = Decimal('800.00')
        covered.recalculate_remaining()
        other.add(PaymentAttribution(family_id=editor_ctx.family_id, income_event_id=first.id,
                                     payment_id=payment.id, amount=Decimal('800.00'),
                                     created_by=editor_ctx.user_id))
        other.commit()
        other.close()

        with pytest.raises(ValidationError):
            AllocationService.attribute_payment(editor_ctx, second.id, payment.id, 800)
        assert PaymentAttribution.query.count() == 1
        assert _event(second.id).remaining_amount == Decimal('1000.00')

    def test_auto_attribute_skips_payment_covered_elsewhere(self, app_context, editor_ctx):
        event = _income(editor_ctx, amount=1000)
        payment = PaymentService.get(editor_ctx, _payment(editor_ctx, 400).id)
        assert payment.attributions == []

        other = Session(bind=db.engine)
        covered = other.get(IncomeEvent, event.id)
        covered.allocated_amount = Decimal('400.00')
        covered.recalculate_remaining()
        other.add(PaymentAttribution(family_id=editor_ctx.family_id, income_event_id=event.id,
                                     payment_id=payment.id, amount=Decimal('400.00'),
                                     created_by=editor_ctx.user_id))
        other.commit()
        other.close()

        created, skipped = AllocationService.auto_attribute(editor_ctx)
        assert created == []
        assert skipped == []
        assert PaymentAttribution.query.count() == 1
        assert _event(event.id).remaining_amount == Decimal('600.00')

    def test_version_counter_advances_on_balance_change(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        version = event.version_id
        payment = _payment(editor_ctx, 100)
        AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 100)
        assert _event(event.id).version_id > version

    def test_update_attribution(self, app_context, editor_ctx):
        event = _income(editor_ctx, amount=1000)
        payment = _payment(editor_ctx, 900)
        attribution = AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 400)

        AllocationService.update_attribution(editor_ctx, attribution.id, 900, payment_id=payment.id)
        assert _event(event.id).remaining_amount == Decimal('100.00')

        with pytest.raises(ValidationError):
            AllocationService.update_attribution(editor_ctx, attribution.id, 1000)

    def test_remove_attribution_restores_balance(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 600)
        attribution = AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 600)

        event = AllocationService.remove_attribution(editor_ctx, attribution.id, payment_id=payment.id)
        assert event.remaining_amount == Decimal('2000.00')
        assert event.allocated_amount == Decimal('0.00')
        assert PaymentAttribution.query.count() == 0

    def test_orphaned_attribution_is_refused(self, app_context, editor_ctx):
        event = _income(editor_ctx)
        payment = _payment(editor_ctx, 600)
        attribution = AllocationService.attribute_payment(editor_ctx, event.id, payment.id, 600)

        stored = _event(event.id)
        stored.status = 'cancelled'
        db.session.commit()

        with pytest.raises(ConflictError) as exc:
            AllocationService.remove_attribution(editor_ctx, attribution.id)
        assert exc.value.code == 'ORPHANED_ATTRIBUTION'

    def test_list_payment_attributions(self, app_context, editor_ctx):
        first = _income(editor_ctx, amount=300, name='Side job')
        second = _income(editor_ctx, amount=1000, scheduled='2024-06-15')
        payment = _payment(editor_ctx, 500)
        AllocationService.attribute_payment(editor_ctx, first.id, payment.id, 300)
        AllocationService.attribute_payment(editor_ctx, second.id, payment.id, 150)

        result = AllocationService.list_payment_attributions(editor_ctx, payment.id)
        assert result['totalAttributed'] == 450.0
        assert result['unattributedAmount'] == 50.0
        assert [a['incomeEventName'] for a in result['attributions']] == ['Side job', 'Salary']

    def test_auto_attribute_uses_earliest_event_that_fits(self, app_context, editor_ctx):
        early = _income(editor_ctx, amount=500, scheduled='2024-06-01')
        late = _income(editor_ctx, amount=2000, scheduled='2024-06-15')
        rent = _payment(editor_ctx, 400, due='2024-06-05', payee='Rent')
        power = _payment(editor_ctx, 300, due='2024-06-10', payee='Power')
        boat = _payment(editor_ctx, 5000, due='2024-06-20', payee='Boat')

        created, skipped = AllocationService.auto_attribute(editor_ctx)

        assert [(a.payment_id, a.income_event_id) for a in created] == [
            (rent.id, early.id), (power.id, late.id)
        ]
        assert all(a.attribution_type == 'automatic' for a in created)
        assert skipped == [boat.id]
        assert _event(early.id).remaining_amount == Decimal('100.00')
        assert _event(late.id).remaining_amount == Decimal('1700.00')

        created, skipped = AllocationService.auto_attribute(editor_ctx)
        assert created == []
        assert skipped == [boat.id]


# ============================================================================
# API
# ============================================================================

class TestAllocationApi:

    def _setup(self, client, headers):
        client.post('/budget-categories', json={'name': 'Needs', 'targetPercentage': 50}, headers=headers)
        client.post('/budget-categories', json={'name': 'Wants', 'targetPercentage': 30}, headers=headers)
        client.post('/budget-categories', json={'name': 'Savings', 'targetPercentage': 20}, headers=headers)
        return client.post('/income-events', json={
            'name': 'Paycheck', 'amount': '1000.01', 'scheduledDate': '2024-06-01'
        }, headers=headers).get_json()['incomeEvent']

    def test_generate_and_summary(self, client, editor_headers):
        event = self._setup(client, editor_headers)

        response = client.post(f"/budget-allocations/{event['id']}/generate", headers=editor_headers)
        assert response.status_code == 201
        allocations = response.get_json()['allocations']
        assert round(sum(a['amount'] for a in allocations), 2) <= 1000.01
        assert [a['categoryName'] for a in allocations] == ['Needs', 'Wants', 'Savings']

        again = client.post(f"/budget-allocations/{event['id']}/generate", headers=editor_headers)
        assert again.status_code == 409

        listing = client.get(f"/budget-allocations?incomeEventId={event['id']}", headers=editor_headers)
        assert len(listing.get_json()['allocations']) == 3

        summary = client.get(f"/budget-allocations/{event['id']}/summary", headers=editor_headers).get_json()
        assert summary['summary']['allocationPercentage'] <= 100.0

    def test_attribute_endpoint(self, client, editor_headers):
        event = self._setup(client, editor_headers)
        payment = client.post('/payments', json={'payee': 'Rent', 'amount': 700, 'dueDate': '2024-06-03'},
                              headers=editor_headers).get_json()['payment']

        response = client.post(f"/payments/{payment['id']}/attributions",
                               json={'incomeEventId': event['id'], 'amount': 700}, headers=editor_headers)
        assert response.status_code == 201
        body = response.get_json()
        assert body['incomeEvent']['remainingAmount'] == 300.01
        attribution_id = body['attribution']['id']

        response = client.post(f"/payments/{payment['id']}/attributions",
                               json={'incomeEventId': event['id'], 'amount': 700}, headers=editor_headers)
        assert response.status_code in (400, 409)

        response = client.put(f"/payments/{payment['id']}/attributions/{attribution_id}",
                              json={'amount': 500}, headers=editor_headers)
        assert response.get_json()['incomeEvent']['remainingAmount'] == 500.01

        response = client.delete(f"/payments/{payment['id']}/attributions/{attribution_id}",
                                 headers=editor_headers)
        assert response.status_code == 200
        assert response.get_json()['incomeEvent']['remainingAmount'] == 1000.01

    def test_insufficient_income_is_409(self, client, editor_headers):
        event = client.post('/income-events', json={
            'name': 'Tiny', 'amount': 50, 'scheduledDate': '2024-06-01'
        }, headers=editor_headers).get_json()['incomeEvent']
        payment = client.post('/payments', json={'payee': 'Rent', 'amount': 700, 'dueDate': '2024-06-03'},
                              headers=editor_headers).get_json()['payment']

        response = client.post(f"/payments/{payment['id']}/attributions",
                               json={'incomeEventId': event['id'], 'amount': 700}, headers=editor_headers)
        assert response.status_code == 409
        assert response.get_json()['code'] == 'INSUFFICIENT_REMAINING_INCOME'

    def test_auto_attribute_endpoint(self, client, editor_headers):
        self._setup(client, editor_headers)
        payment = client.post('/payments', json={'payee': 'Rent', 'amount': 700, 'dueDate': '2024-06-03'},
                              headers=editor_headers).get_json()['payment']

        body = client.post('/payments/auto-attribute', headers=editor_headers).get_json()
        assert [a['paymentId'] for a in body['attributions']] == [payment['id']]
        assert body['skippedPaymentIds'] == []
