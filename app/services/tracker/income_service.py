# app/services/tracker/income_service.py - Income event store

from datetime import date, timedelta
from flask import current_app
from sqlalchemy import func, or_
from models import db, IncomeEvent, IncomeStatus, Frequency, ZERO, round_currency, as_float
from app.errors import (
    ValidationError, NotFoundError, ConflictError,
    IncomeEventNotEditable, InvalidStatusTransition
)
from app.services.audit_service import AuditService
from app.services.recurrence import next_occurrence, FREQUENCIES
from app.services.transaction import commit_or_conflict, lock_income_event
from app.services.validation import (
    parse_string, parse_amount, parse_date, parse_choice, reject_unknown_fields
)
import logging

logger = logging.getLogger(__name__)

CREATE_FIELDS = ('name', 'amount', 'scheduledDate', 'frequency', 'source', 'notes')
UPDATE_FIELDS = CREATE_FIELDS + ('status',)

# Still editable after an event is received or cancelled
CLOSED_EDITABLE_FIELDS = {'name', 'source', 'notes', 'status'}

INCOME_STATUSES = [s.value for s in IncomeStatus]


class IncomeEventService:

    @staticmethod
    def build(ctx, data):
        """Validate one create payload and return an unsaved IncomeEvent"""
        if not isinstance(data, dict):
            raise ValidationError('Each income event must be a JSON object')
        reject_unknown_fields(data, CREATE_FIELDS)

        name = parse_string(data.get('name'), 'name', max_length=255)
        amount = parse_amount(data.get('amount'), 'amount')
        scheduled_date = parse_date(data.get('scheduledDate'), 'scheduledDate')
        frequency = parse_choice(data.get('frequency'), 'frequency', FREQUENCIES,
                                 default=Frequency.ONCE.value)
        source = parse_string(data.get('source'), 'source', required=False, max_length=255)
        notes = parse_string(data.get('notes'), 'notes', required=False, max_length=2000)

        return IncomeEvent(
            family_id=ctx.family_id,
            name=name,
            amount=amount,
            scheduled_date=scheduled_date,
            frequency=frequency,
            next_occurrence=next_occurrence(scheduled_date, frequency),
            source=source,
            status=IncomeStatus.SCHEDULED.value,
            allocated_amount=ZERO,
            remaining_amount=amount,
            notes=notes,
        )

    @staticmethod
    def create(ctx, data):
        ctx.require('can_edit_payments')
        event = IncomeEventService.build(ctx, data)
        db.session.add(event)
        db.session.flush()
        AuditService.record(ctx, 'create', 'income_event', event.id, None, event.to_dict())
        commit_or_conflict('CREATE_INCOME')
        logger.info(f"[CREATE_INCOME] Income event {event.id} '{event.name}' ${event.amount} "
                    f"on {event.scheduled_date} for family {ctx.family_id}")
        return event

    @staticmethod
    def get(ctx, event_id):
        event = IncomeEvent.query.filter_by(id=event_id, family_id=ctx.family_id).first()
        if not event:
            raise NotFoundError(f'Income event {event_id} not found')
        return event

    @staticmethod
    def update(ctx, event_id, patch):
        """Partial update; schedule fields are locked once the event is closed"""
        ctx.require('can_edit_payments')
        if not isinstance(patch, dict) or not patch:
            raise ValidationError('No fields to update')
        reject_unknown_fields(patch, UPDATE_FIELDS)

        event = lock_income_event(ctx, event_id)
        old_values = event.to_dict()

        if 'status' in patch and patch['status'] != event.status:
            raise InvalidStatusTransition(
                'Status changes go through mark-received or cancel', field='status'
            )

        if event.status != IncomeStatus.SCHEDULED.value:
            locked = sorted(set(patch) - CLOSED_EDITABLE_FIELDS)
            if locked:
                raise IncomeEventNotEditable(
                    f"Income event is {event.status}; only name, source and notes can change",
                    field=locked[0]
                )

        if 'name' in patch:
            event.name = parse_string(patch['name'], 'name', max_length=255)
        if 'source' in patch:
            event.source = parse_string(patch['source'], 'source', required=False, max_length=255)
        if 'notes' in patch:
            event.notes = parse_string(patch['notes'], 'notes', required=False, max_length=2000)

        if 'amount' in patch:
            amount = parse_amount(patch['amount'], 'amount')
            if amount < (event.allocated_amount or ZERO):
                raise ValidationError(
                    f"amount cannot be less than the ${event.allocated_amount} already attributed",
                    field='amount'
                )
            budgeted = sum((a.amount for a in event.budget_allocations), ZERO)
            if amount < budgeted:
                raise ValidationError(
                    f"amount cannot be less than the ${round_currency(budgeted)} already budgeted",
                    field='amount'
                )
            event.amount = amount

        schedule_changed = False
        if 'scheduledDate' in patch:
            event.scheduled_date = parse_date(patch['scheduledDate'], 'scheduledDate')
            schedule_changed = True
        if 'frequency' in patch:
            event.frequency = parse_choice(patch['frequency'], 'frequency', FREQUENCIES)
            schedule_changed = True
        if schedule_changed:
            event.next_occurrence = next_occurrence(event.scheduled_date, event.frequency)

        event.recalculate_remaining()
        AuditService.record(ctx, 'update', 'income_event', event.id, old_values, event.to_dict())
        commit_or_conflict('UPDATE_INCOME')
        logger.info(f"[UPDATE_INCOME] Income event {event.id} updated fields {sorted(patch)}")
        return event

    @staticmethod
    def mark_received(ctx, event_id, actual_date=None, actual_amount=None):
        """
        Record that an income event arrived.

        Defaults to today and the expected amount. Recurring events get
        their next occurrence created as a new scheduled event.

        Returns:
            tuple: (event, next_event or None)
        """
        ctx.require('can_edit_payments')
        event = lock_income_event(ctx, event_id)

        if not event.can_transition_to(IncomeStatus.RECEIVED.value):
            logger.warning(f"[MARK_RECEIVED] Refused: income event {event.id} is {event.status}")
            raise InvalidStatusTransition(f"Cannot mark a {event.status} income event as received")

        received_on = parse_date(actual_date, 'actualDate', required=False) or date.today()
        received_amount = parse_amount(actual_amount, 'actualAmount', required=False)
        if received_amount is None:
            received_amount = event.amount

        if received_amount < (event.allocated_amount or ZERO):
            raise ValidationError(
                f"actualAmount cannot be less than the ${event.allocated_amount} already attributed",
                field='actualAmount'
            )

        old_values = event.to_dict()
        event.status = IncomeStatus.RECEIVED.value
        event.actual_date = received_on
        event.actual_amount = received_amount
        event.recalculate_remaining()
        AuditService.record(ctx, 'update', 'income_event', event.id, old_values, event.to_dict())

        next_event = IncomeEventService._spawn_next(ctx, event)

        commit_or_conflict('MARK_RECEIVED')
        logger.info(f"[MARK_RECEIVED] Income event {event.id} received ${received_amount} on {received_on}")
        if next_event:
            logger.info(f"[MARK_RECEIVED] Scheduled next occurrence {next_event.id} on {next_event.scheduled_date}")
        return event, next_event

    @staticmethod
    def _spawn_next(ctx, event):
        if not event.next_occurrence:
            return None

        existing = IncomeEvent.query.filter(
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.name == event.name,
            IncomeEvent.scheduled_date == event.next_occurrence,
            IncomeEvent.status != IncomeStatus.CANCELLED.value,
        ).first()
        if existing:
            return None

        next_event = IncomeEvent(
            family_id=ctx.family_id,
            name=event.name,
            amount=event.amount,
            scheduled_date=event.next_occurrence,
            frequency=event.frequency,
            next_occurrence=next_occurrence(event.next_occurrence, event.frequency),
            source=event.source,
            status=IncomeStatus.SCHEDULED.value,
            allocated_amount=ZERO,
            remaining_amount=event.amount,
            notes=event.notes,
        )
        db.session.add(next_event)
        db.session.flush()
        AuditService.record(ctx, 'create', 'income_event', next_event.id, None, next_event.to_dict())
        return next_event

    @staticmethod
    def cancel(ctx, event_id):
        """Soft delete; refused while payments are attributed to the event"""
        ctx.require('can_edit_payments')
        event = lock_income_event(ctx, event_id)

        if not event.can_transition_to(IncomeStatus.CANCELLED.value):
            raise InvalidStatusTransition(f"Cannot cancel a {event.status} income event")

        if event.attributions:
            logger.warning(f"[CANCEL_INCOME] Refused: income event {event.id} has "
                           f"{len(event.attributions)} attributions")
            raise ConflictError(
                'Income event has payment attributions; remove them before cancelling',
                code='HAS_ATTRIBUTIONS'
            )

        old_values = event.to_dict()
        event.status = IncomeStatus.CANCELLED.value
        event.budget_allocations.clear()
        event.recalculate_remaining()
        AuditService.record(ctx, 'delete', 'income_event', event.id, old_values, event.to_dict())
        commit_or_conflict('CANCEL_INCOME')
        logger.info(f"[CANCEL_INCOME] Income event {event.id} cancelled")
        return event

    @staticmethod
    def list_events(ctx, filters=None, limit=50, offset=0):
        """
        Page of the family's income events ordered by scheduled date.

        Returns:
            tuple: (events, total)
        """
        filters = filters or {}
        query = IncomeEvent.query.filter(IncomeEvent.family_id == ctx.family_id)

        if filters.get('source'):
            query = query.filter(IncomeEvent.source == filters['source'])
        if filters.get('status'):
            query = query.filter(IncomeEvent.status == filters['status'])
        if filters.get('start_date'):
            query = query.filter(IncomeEvent.scheduled_date >= filters['start_date'])
        if filters.get('end_date'):
            query = query.filter(IncomeEvent.scheduled_date <= filters['end_date'])
        if filters.get('search'):
            term = filters['search'].lower()
            query = query.filter(or_(
                func.lower(IncomeEvent.name).contains(term, autoescape=True),
                func.lower(IncomeEvent.source).contains(term, autoescape=True),
                func.lower(IncomeEvent.notes).contains(term, autoescape=True),
            ))

        total = query.count()
        events = query.order_by(IncomeEvent.scheduled_date, IncomeEvent.id) \
            .offset(offset).limit(limit).all()
        return events, total

    @staticmethod
    def bulk_create(ctx, items):
        """
        Create many events; invalid items are reported, valid ones saved.

        Returns:
            tuple: (created_events, errors) where each error is
            {'index', 'error', 'details'}
        """
        ctx.require('can_edit_payments')
        if not isinstance(items, list) or not items:
            raise ValidationError('items must be a non-empty array', field='items')
        max_items = current_app.config['MAX_BULK_ITEMS']
        if len(items) > max_items:
            raise ValidationError(f'At most {max_items} items can be created at once', field='items')

        created, errors = [], []
        for index, item in enumerate(items):
            try:
                event = IncomeEventService.build(ctx, item)
            except ValidationError as e:
                errors.append({
                    'index': index,
                    'error': e.message,
                    'details': {'field': e.field, 'code': e.code},
                })
                continue
            db.session.add(event)
            created.append(event)

        if created:
            db.session.flush()
            for event in created:
                AuditService.record(ctx, 'create', 'income_event', event.id, None, event.to_dict())
            commit_or_conflict('BULK_INCOME')

        logger.info(f"[BULK_INCOME] Family {ctx.family_id}: {len(created)} created, {len(errors)} rejected")
        return created, errors

    @staticmethod
    def upcoming(ctx, days=None):
        """Scheduled events due between today and today + days"""
        days = days or current_app.config['UPCOMING_DAYS']
        today = date.today()
        return IncomeEvent.query.filter(
            IncomeEvent.family_id == ctx.family_id,
            IncomeEvent.status == IncomeStatus.SCHEDULED.value,
            IncomeEvent.scheduled_date >= today,
            IncomeEvent.scheduled_date <= today + timedelta(days=days),
        ).order_by(IncomeEvent.scheduled_date, IncomeEvent.id).all()

    @staticmethod
    def summary(ctx, start_date=None, end_date=None):
        """Totals and counts by status and source for a date range"""
        query = IncomeEvent.query.filter(IncomeEvent.family_id == ctx.family_id)
        if start_date:
            query = query.filter(IncomeEvent.scheduled_date >= start_date)
        if end_date:
            query = query.filter(IncomeEvent.scheduled_date <= end_date)

        counts = {status: 0 for status in INCOME_STATUSES}
        total_scheduled = total_received = total_allocated = total_remaining = ZERO
        by_source = {}

        for event in query.all():
            counts[event.status] += 1
            if event.status == IncomeStatus.CANCELLED.value:
                continue

            if event.status == IncomeStatus.SCHEDULED.value:
                total_scheduled += event.amount
            else:
                total_received += event.effective_amount
            total_allocated += event.allocated_amount or ZERO
            total_remaining += event.remaining_amount or ZERO

            source = event.source or 'Unspecified'
            bucket = by_source.setdefault(source, {'total': ZERO, 'count': 0})
            bucket['total'] += event.effective_amount
            bucket['count'] += 1

        return {
            'startDate': start_date.isoformat() if start_date else None,
            'endDate': end_date.isoformat() if end_date else None,
            'totalScheduled': as_float(total_scheduled),
            'totalReceived': as_float(total_received),
            'totalExpected': as_float(total_scheduled + total_received),
            'totalAllocated': as_float(total_allocated),
            'totalRemaining': as_float(total_remaining),
            'counts': counts,
            'bySource': [
                {'source': source, 'total': as_float(values['total']), 'count': values['count']}
                for source, values in sorted(by_source.items(), key=lambda kv: kv[1]['total'], reverse=True)
            ],
        }

    @staticmethod
    def list_attributions(ctx, event_id):
        event = IncomeEventService.get(ctx, event_id)
        attributions = sorted(event.attributions, key=lambda a: (a.created_at, a.id))
        total = round_currency(sum((a.amount for a in attributions), ZERO))
        return {
            'incomeEvent': event.to_dict(),
            'attributions': [a.to_dict() for a in attributions],
            'totalAttributed': as_float(total),
            'remainingAmount': as_float(event.remaining_amount),
        }
