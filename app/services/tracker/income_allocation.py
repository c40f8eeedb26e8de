# app/services/tracker/income_allocation.py - Budget allocation and payment attribution engine

from models import (
    db, IncomeEvent, IncomeStatus, Payment, PaymentStatus, PaymentAttribution, AttributionType,
    BudgetAllocation, BudgetCategory, ZERO, round_currency, as_float, percentage_of
)
from app.errors import (
    ValidationError, NotFoundError, ConflictError, BudgetPercentageExceeded,
    InsufficientRemainingIncome, PaymentAlreadySettled
)
from app.services.audit_service import AuditService
from app.services.tracker.income_service import IncomeEventService
from app.services.tracker.payment_service import PaymentService
from app.services.transaction import commit_or_conflict, lock_income_event, lock_payment
from app.services.validation import parse_amount, parse_choice, parse_int, parse_percentage
from datetime import datetime
from decimal import Decimal
import logging

# Set up logging
logger = logging.getLogger(__name__)

ATTRIBUTION_TYPES = [t.value for t in AttributionType]


class AllocationService:
    """
    Splits income events across budget categories and links payments to
    the income that covers them.

    Every path that reads a remaining balance and writes a new one loads
    the income event with a row lock; the version counter on IncomeEvent
    catches anything that slips through.
    """

    # ------------------------------------------------------------------
    # Budget allocations
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_overrides(overrides, categories):
        """{categoryId: percentage} -> {int id: Decimal pct}, validated against active categories"""
        if overrides is None:
            return {}
        if not isinstance(overrides, dict):
            raise ValidationError('overrides must be an object of categoryId -> percentage', field='overrides')

        active_ids = {c.id for c in categories}
        parsed = {}
        for key, value in overrides.items():
            category_id = parse_int(key, 'overrides')
            if category_id not in active_ids:
                raise ValidationError(f'Budget category {category_id} is not an active category',
                                      field='overrides')
            parsed[category_id] = parse_percentage(value, field='overrides')
        return parsed

    @staticmethod
    def compute_allocations(amount, percentages):
        """
        Amount per category for a list of (category, percentage) pairs.

        Each share is rounded half-up to cents; if rounding pushes the total
        over the income amount the excess is taken back from the last shares.
        """
        shares = [[category, pct, round_currency(amount * pct / 100)] for category, pct in percentages]
        excess = sum((share[2] for share in shares), ZERO) - amount
        for share in reversed(shares):
            if excess <= 0:
                break
            cut = min(excess, share[2])
            share[2] -= cut
            excess -= cut
        return [tuple(share) for share in shares]

    @staticmethod
    def allocate(ctx, income_event_id, overrides=None):
        """Create one allocation per active category for an income event"""
        ctx.require('can_manage_budget')
        event = lock_income_event(ctx, income_event_id)

        if event.status == IncomeStatus.CANCELLED.value:
            raise ValidationError('Cannot allocate a cancelled income event')
        if event.budget_allocations:
            raise ConflictError('Income event already has budget allocations', code='ALLOCATIONS_EXIST')

        categories = BudgetCategory.query.filter_by(family_id=ctx.family_id, is_active=True) \
            .order_by(BudgetCategory.sort_order, BudgetCategory.id).all()
        if not categories:
            raise ValidationError('No active budget categories to allocate to', code='NO_ACTIVE_CATEGORIES')

        custom = AllocationService._parse_overrides(overrides, categories)
        percentages = [(c, custom.get(c.id, c.target_percentage)) for c in categories]
        total_pct = sum((pct for _, pct in percentages), ZERO)
        if total_pct > 100:
            raise BudgetPercentageExceeded(f'Allocation percentages total {total_pct}%, which exceeds 100%',
                                           field='overrides')

        allocations = []
        for category, pct, amount in AllocationService.compute_allocations(event.amount, percentages):
            allocation = BudgetAllocation(
                family_id=ctx.family_id,
                income_event=event,
                budget_category=category,
                amount=amount,
                percentage=pct,
            )
            db.session.add(allocation)
            allocations.append(allocation)

        db.session.flush()
        for allocation in allocations:
            AuditService.record(ctx, 'create', 'budget_allocation', allocation.id, None, allocation.to_dict())
        commit_or_conflict('ALLOCATE')

        total = sum((a.amount for a in allocations), ZERO)
        logger.info(f"[ALLOCATE] Income event {event.id}: ${total} of ${event.amount} "
                    f"across {len(allocations)} categories")
        return allocations

    @staticmethod
    def list_allocations(ctx, income_event_id):
        event = IncomeEventService.get(ctx, income_event_id)
        return sorted(event.budget_allocations,
                      key=lambda a: (a.budget_category.sort_order, a.budget_category_id))

    @staticmethod
    def update_allocation(ctx, allocation_id, amount):
        """Adjust one allocation; the event's allocations stay within its amount"""
        ctx.require('can_manage_budget')
        allocation = BudgetAllocation.query.filter_by(id=allocation_id, family_id=ctx.family_id).first()
        if not allocation:
            raise NotFoundError(f'Budget allocation {allocation_id} not found')

        new_amount = parse_amount(amount, 'amount', allow_zero=True)
        event = lock_income_event(ctx, allocation.income_event_id)

        others = sum((a.amount for a in event.budget_allocations if a.id != allocation.id), ZERO)
        if others + new_amount > event.amount:
            raise ValidationError(
                f'Allocations would total ${round_currency(others + new_amount)}, '
                f'more than the income amount ${event.amount}',
                code='ALLOCATION_EXCEEDS_INCOME', field='amount'
            )

        old_values = allocation.to_dict()
        allocation.amount = new_amount
        allocation.percentage = round_currency(Decimal(str(percentage_of(new_amount, event.amount))))
        # Touch the event so the version counter guards concurrent edits
        event.updated_at = datetime.utcnow()
        AuditService.record(ctx, 'update', 'budget_allocation', allocation.id, old_values, allocation.to_dict())
        commit_or_conflict('UPDATE_ALLOCATION')
        logger.info(f"[UPDATE_ALLOCATION] Allocation {allocation.id} set to ${new_amount}")
        return allocation

    @staticmethod
    def summary(ctx, income_event_id):
        """
        Allocated vs spent for an income event.

        Spent for a category is what this event has been attributed to
        payments in that category.
        """
        event = IncomeEventService.get(ctx, income_event_id)
        allocations = AllocationService.list_allocations(ctx, income_event_id)

        spent_by_category = {}
        for attribution in event.attributions:
            category_id = attribution.payment.spending_category_id
            if category_id is not None:
                spent_by_category[category_id] = spent_by_category.get(category_id, ZERO) + attribution.amount

        total_allocated = total_spent = ZERO
        rows = []
        for allocation in allocations:
            spent = round_currency(spent_by_category.get(allocation.budget_category_id, ZERO))
            total_allocated += allocation.amount
            total_spent += spent
            row = allocation.to_dict()
            row['spent'] = as_float(spent)
            row['remaining'] = as_float(allocation.amount - spent)
            rows.append(row)

        if event.amount and allocations:
            allocation_pct = min(100.0, max(0.0, percentage_of(total_allocated, event.amount)))
        else:
            allocation_pct = 0.0

        return {
            'incomeEvent': event.to_dict(),
            'allocations': rows,
            'totalAllocated': as_float(total_allocated),
            'totalSpent': as_float(total_spent),
            'totalRemaining': as_float(total_allocated - total_spent),
            'unallocatedAmount': as_float(max(ZERO, event.amount - total_allocated)),
            'allocationPercentage': allocation_pct,
        }

    # ------------------------------------------------------------------
    # Payment attributions
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_to_event(event, delta):
        event.allocated_amount = round_currency((event.allocated_amount or ZERO) + delta)
        event.recalculate_remaining()

    @staticmethod
    def _get_attribution(ctx, attribution_id, payment_id=None):
        query = PaymentAttribution.query.filter_by(id=attribution_id, family_id=ctx.family_id)
        if payment_id is not None:
            query = query.filter_by(payment_id=payment_id)
        attribution = query.first()
        if not attribution:
            raise NotFoundError(f'Attribution {attribution_id} not found')
        return attribution

    @staticmethod
    def _lock_live_event(ctx, attribution):
        """Income event behind an attribution; refuses orphans"""
        event = IncomeEvent.query.filter_by(
            id=attribution.income_event_id, family_id=ctx.family_id
        ).with_for_update().populate_existing().first()
        if event is None or event.status == IncomeStatus.CANCELLED.value:
            logger.warning(f"[ATTRIBUTION] Orphaned attribution {attribution.id}")
            raise ConflictError('The income event for this attribution no longer exists',
                                code='ORPHANED_ATTRIBUTION')
        return event

    @staticmethod
    def attribute_payment(ctx, income_event_id, payment_id, amount,
                          attribution_type=AttributionType.MANUAL.value):
        """Earmark part of an income event for a payment"""
        ctx.require('can_edit_payments')
        amount = parse_amount(amount, 'amount')
        attribution_type = parse_choice(attribution_type, 'attributionType', ATTRIBUTION_TYPES,
                                        default=AttributionType.MANUAL.value)

        payment = lock_payment(ctx, payment_id)
        if payment.is_settled():
            raise PaymentAlreadySettled(f'Payment is already {payment.status}')

        event = lock_income_event(ctx, income_event_id)
        if event.status == IncomeStatus.CANCELLED.value:
            raise ValidationError('Cannot attribute payments to a cancelled income event',
                                  field='incomeEventId')

        if amount > event.remaining_amount:
            logger.warning(f"[ATTRIBUTE] Refused: ${amount} exceeds remaining ${event.remaining_amount} "
                           f"on income event {event.id}")
            raise InsufficientRemainingIncome(
                f'Amount ${amount} exceeds the ${event.remaining_amount} remaining on this income event',
                field='amount'
            )

        attributed = payment.attributed_amount
        if attributed + amount > payment.amount:
            raise ValidationError(
                f'Attribution would cover ${round_currency(attributed + amount)} of a ${payment.amount} payment',
                field='amount'
            )

        attribution = PaymentAttribution(
            family_id=ctx.family_id,
            income_event=event,
            payment=payment,
            amount=amount,
            attribution_type=attribution_type,
            created_by=ctx.user_id,
        )
        db.session.add(attribution)
        AllocationService._apply_to_event(event, amount)
        db.session.flush()
        AuditService.record(ctx, 'create', 'payment_attribution', attribution.id, None, attribution.to_dict())
        commit_or_conflict('ATTRIBUTE')

        logger.info(f"[ATTRIBUTE] ${amount} of income event {event.id} -> payment {payment.id} "
                    f"({attribution_type}), remaining ${event.remaining_amount}")
        return attribution

    @staticmethod
    def update_attribution(ctx, attribution_id, amount, payment_id=None):
        ctx.require('can_edit_payments')
        attribution = AllocationService._get_attribution(ctx, attribution_id, payment_id)
        new_amount = parse_amount(amount, 'amount')

        payment = lock_payment(ctx, attribution.payment_id)
        if payment.is_settled():
            raise PaymentAlreadySettled(f'Payment is already {payment.status}')

        event = AllocationService._lock_live_event(ctx, attribution)
        delta = new_amount - attribution.amount
        if delta > event.remaining_amount:
            raise InsufficientRemainingIncome(
                f'Increase of ${delta} exceeds the ${event.remaining_amount} remaining on this income event',
                field='amount'
            )
        if payment.attributed_amount + delta > payment.amount:
            raise ValidationError('Attributions would exceed the payment amount', field='amount')

        old_values = attribution.to_dict()
        attribution.amount = new_amount
        AllocationService._apply_to_event(event, delta)
        AuditService.record(ctx, 'update', 'payment_attribution', attribution.id, old_values, attribution.to_dict())
        commit_or_conflict('UPDATE_ATTRIBUTION')
        logger.info(f"[UPDATE_ATTRIBUTION] Attribution {attribution.id} now ${new_amount}")
        return attribution

    @staticmethod
    def remove_attribution(ctx, attribution_id, payment_id=None):
        """Delete an attribution and give the amount back to its income event"""
        ctx.require('can_edit_payments')
        attribution = AllocationService._get_attribution(ctx, attribution_id, payment_id)
        event = AllocationService._lock_live_event(ctx, attribution)

        old_values = attribution.to_dict()
        event.allocated_amount = max(ZERO, round_currency(event.allocated_amount - attribution.amount))
        event.recalculate_remaining()
        db.session.delete(attribution)
        AuditService.record(ctx, 'delete', 'payment_attribution', attribution_id, old_values, None)
        commit_or_conflict('REMOVE_ATTRIBUTION')
        logger.info(f"[REMOVE_ATTRIBUTION] Attribution {attribution_id} removed, income event {event.id} "
                    f"remaining ${event.remaining_amount}")
        return event

    @staticmethod
    def list_payment_attributions(ctx, payment_id):
        payment = PaymentService.get(ctx, payment_id)
        attributions = sorted(payment.attributions, key=lambda a: (a.created_at, a.id))
        total = payment.attributed_amount
        return {
            'payment': payment.to_dict(),
            'attributions': [a.to_dict() for a in attributions],
            'totalAttributed': as_float(total),
            'unattributedAmount': as_float(max(ZERO, payment.amount - total)),
        }

    @staticmethod
    def auto_attribute(ctx):
        """
        Attribute every unattributed scheduled payment, earliest due first,
        in full to the earliest open income event that can cover it.

        Returns:
            tuple: (created_attributions, skipped_payment_ids)
        """
        ctx.require('can_edit_payments')

        # Payments before events, the same lock order as attribute_payment
        payments = Payment.query.filter_by(family_id=ctx.family_id, status=PaymentStatus.SCHEDULED.value) \
            .order_by(Payment.due_date, Payment.id) \
            .with_for_update().populate_existing().all()
        for payment in payments:
            db.session.expire(payment, ['attributions'])
        pending = [p for p in payments if not p.attributions]

        events = IncomeEvent.query.filter(
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.status.in_([IncomeStatus.SCHEDULED.value, IncomeStatus.RECEIVED.value])
        ).order_by(IncomeEvent.scheduled_date, IncomeEvent.id).with_for_update().populate_existing().all()

        created, skipped = [], []
        for payment in pending:
            event = next((e for e in events if e.remaining_amount >= payment.amount), None)
            if event is None:
                skipped.append(payment.id)
                continue
            attribution = PaymentAttribution(
                family_id=ctx.family_id,
                income_event=event,
                payment=payment,
                amount=payment.amount,
                attribution_type=AttributionType.AUTOMATIC.value,
                created_by=ctx.user_id,
            )
            db.session.add(attribution)
            AllocationService._apply_to_event(event, payment.amount)
            created.append(attribution)

        if created:
            db.session.flush()
            for attribution in created:
                AuditService.record(ctx, 'create', 'payment_attribution', attribution.id, None,
                                    attribution.to_dict())
            commit_or_conflict('AUTO_ATTRIBUTE')

        logger.info(f"[AUTO_ATTRIBUTE] Family {ctx.family_id}: {len(created)} attributed, {len(skipped)} skipped")
        return created, skipped
