# app/services/tracker/payment_service.py - Payment store

from datetime import date, timedelta
from flask import current_app
from sqlalchemy import func, or_
from models import (
    db, Payment, PaymentStatus, PaymentType, BudgetCategory, Frequency,
    STORED_PAYMENT_STATUSES, ZERO, round_currency, as_float
)
from app.errors import (
    ValidationError, NotFoundError, CannotUpdatePaidPayment,
    PaymentNotEditable, InvalidStatusTransition
)
from app.services.audit_service import AuditService
from app.services.recurrence import next_occurrence, FREQUENCIES
from app.services.transaction import commit_or_conflict, lock_income_event, lock_payment
from app.services.validation import (
    parse_string, parse_amount, parse_date, parse_choice, parse_bool, parse_int,
    reject_unknown_fields
)
import logging

logger = logging.getLogger(__name__)

CREATE_FIELDS = ('payee', 'amount', 'dueDate', 'paymentType', 'frequency',
                 'spendingCategoryId', 'autoPayEnabled', 'notes')
UPDATE_FIELDS = CREATE_FIELDS + ('status',)

# Request fields still editable once a payment is paid or cancelled
SETTLED_EDITABLE_REQUEST_FIELDS = {'notes', 'spendingCategoryId', 'status'}

PAYMENT_TYPES = [t.value for t in PaymentType]
FILTER_STATUSES = [s.value for s in PaymentStatus]


class PaymentService:

    @staticmethod
    def _resolve_category(ctx, value):
        category_id = parse_int(value, 'spendingCategoryId', required=False)
        if category_id is None:
            return None
        category = BudgetCategory.query.filter_by(
            id=category_id, family_id=ctx.family_id, is_active=True
        ).first()
        if not category:
            raise ValidationError(f'Budget category {category_id} not found or inactive',
                                  field='spendingCategoryId')
        return category.id

    @staticmethod
    def _resolve_schedule(payment_type, frequency):
        """Default and cross-check paymentType/frequency"""
        if frequency is None:
            frequency = Frequency.MONTHLY.value if payment_type == PaymentType.RECURRING.value \
                else Frequency.ONCE.value
        if payment_type == PaymentType.RECURRING.value and frequency == Frequency.ONCE.value:
            raise ValidationError('Recurring payments need a repeating frequency', field='frequency')
        if payment_type == PaymentType.ONCE.value and frequency != Frequency.ONCE.value:
            raise ValidationError('One-time payments must use frequency "once"', field='frequency')
        return frequency

    @staticmethod
    def build(ctx, data):
        """Validate one create payload and return an unsaved Payment"""
        if not isinstance(data, dict):
            raise ValidationError('Each payment must be a JSON object')
        reject_unknown_fields(data, CREATE_FIELDS)

        payee = parse_string(data.get('payee'), 'payee', max_length=255)
        amount = parse_amount(data.get('amount'), 'amount')
        due_date = parse_date(data.get('dueDate'), 'dueDate')
        payment_type = parse_choice(data.get('paymentType'), 'paymentType', PAYMENT_TYPES,
                                    default=PaymentType.ONCE.value)
        frequency = parse_choice(data.get('frequency'), 'frequency', FREQUENCIES, required=False)
        frequency = PaymentService._resolve_schedule(payment_type, frequency)
        category_id = PaymentService._resolve_category(ctx, data.get('spendingCategoryId'))
        auto_pay = parse_bool(data.get('autoPayEnabled'), 'autoPayEnabled')
        notes = parse_string(data.get('notes'), 'notes', required=False, max_length=2000)

        return Payment(
            family_id=ctx.family_id,
            payee=payee,
            amount=amount,
            due_date=due_date,
            payment_type=payment_type,
            frequency=frequency,
            next_due_date=next_occurrence(due_date, frequency),
            status=PaymentStatus.SCHEDULED.value,
            spending_category_id=category_id,
            auto_pay_enabled=auto_pay,
            notes=notes,
        )

    @staticmethod
    def create(ctx, data):
        ctx.require('can_edit_payments')
        payment = PaymentService.build(ctx, data)
        db.session.add(payment)
        db.session.flush()
        AuditService.record(ctx, 'create', 'payment', payment.id, None, payment.to_dict())
        commit_or_conflict('CREATE_PAYMENT')
        logger.info(f"[CREATE_PAYMENT] Payment {payment.id} to {payment.payee} ${payment.amount} "
                    f"due {payment.due_date} for family {ctx.family_id}")
        return payment

    @staticmethod
    def get(ctx, payment_id):
        payment = Payment.query.filter_by(id=payment_id, family_id=ctx.family_id).first()
        if not payment:
            raise NotFoundError(f'Payment {payment_id} not found')
        return payment

    @staticmethod
    def update(ctx, payment_id, patch):
        """Partial update; paid and cancelled payments only take notes and category"""
        ctx.require('can_edit_payments')
        if not isinstance(patch, dict) or not patch:
            raise ValidationError('No fields to update')
        reject_unknown_fields(patch, UPDATE_FIELDS)

        payment = lock_payment(ctx, payment_id)
        old_values = payment.to_dict()

        if 'status' in patch and patch['status'] != payment.status:
            raise InvalidStatusTransition(
                'Status changes go through mark-paid or cancel', field='status'
            )

        locked = sorted(set(patch) - SETTLED_EDITABLE_REQUEST_FIELDS)
        if locked and payment.status == PaymentStatus.PAID.value:
            logger.warning(f"[UPDATE_PAYMENT] Refused: payment {payment.id} is paid, fields {locked}")
            raise CannotUpdatePaidPayment(
                'Paid payments can only have notes or spending category changed', field=locked[0]
            )
        if locked and payment.status == PaymentStatus.CANCELLED.value:
            raise PaymentNotEditable(
                'Cancelled payments can only have notes or spending category changed', field=locked[0]
            )

        if 'payee' in patch:
            payment.payee = parse_string(patch['payee'], 'payee', max_length=255)
        if 'notes' in patch:
            payment.notes = parse_string(patch['notes'], 'notes', required=False, max_length=2000)
        if 'spendingCategoryId' in patch:
            payment.spending_category_id = PaymentService._resolve_category(ctx, patch['spendingCategoryId'])
        if 'autoPayEnabled' in patch:
            payment.auto_pay_enabled = parse_bool(patch['autoPayEnabled'], 'autoPayEnabled')

        if 'amount' in patch:
            amount = parse_amount(patch['amount'], 'amount')
            attributed = payment.attributed_amount
            if amount < attributed:
                raise ValidationError(
                    f"amount cannot be less than the ${attributed} already attributed", field='amount'
                )
            payment.amount = amount

        schedule_changed = False
        if 'dueDate' in patch:
            payment.due_date = parse_date(patch['dueDate'], 'dueDate')
            schedule_changed = True
        if 'paymentType' in patch or 'frequency' in patch:
            payment_type = parse_choice(patch.get('paymentType', payment.payment_type),
                                        'paymentType', PAYMENT_TYPES)
            frequency = patch['frequency'] if 'frequency' in patch else None
            if frequency is not None:
                frequency = parse_choice(frequency, 'frequency', FREQUENCIES)
            elif 'paymentType' not in patch:
                frequency = payment.frequency
            payment.payment_type = payment_type
            payment.frequency = PaymentService._resolve_schedule(payment_type, frequency)
            schedule_changed = True
        if schedule_changed:
            payment.next_due_date = next_occurrence(payment.due_date, payment.frequency)

        AuditService.record(ctx, 'update', 'payment', payment.id, old_values, payment.to_dict())
        commit_or_conflict('UPDATE_PAYMENT')
        logger.info(f"[UPDATE_PAYMENT] Payment {payment.id} updated fields {sorted(patch)}")
        return payment

    @staticmethod
    def mark_paid(ctx, payment_id, paid_date=None, paid_amount=None):
        """
        Record a payment.

        paidAmount is the total paid so far; below the amount due the payment
        becomes partial. A recurring payment paid in full gets its next
        occurrence scheduled.

        Returns:
            tuple: (payment, next_payment or None)
        """
        ctx.require('can_edit_payments')
        payment = lock_payment(ctx, payment_id)

        if payment.is_settled():
            logger.warning(f"[MARK_PAID] Refused: payment {payment.id} is {payment.status}")
            raise InvalidStatusTransition(f"Payment is already {payment.status}")

        paid_on = parse_date(paid_date, 'paidDate', required=False) or date.today()
        amount_paid = parse_amount(paid_amount, 'paidAmount', required=False)
        if amount_paid is None:
            amount_paid = payment.amount
        if payment.status == PaymentStatus.PARTIAL.value and amount_paid < payment.paid_amount:
            raise ValidationError(
                f"paidAmount cannot drop below the ${payment.paid_amount} already paid",
                field='paidAmount'
            )

        new_status = PaymentStatus.PAID.value if amount_paid >= payment.amount else PaymentStatus.PARTIAL.value
        if not payment.can_transition_to(new_status):
            raise InvalidStatusTransition(f"Cannot move payment from {payment.status} to {new_status}")

        old_values = payment.to_dict()
        payment.status = new_status
        payment.paid_date = paid_on
        payment.paid_amount = amount_paid
        AuditService.record(ctx, 'update', 'payment', payment.id, old_values, payment.to_dict())

        next_payment = None
        if new_status == PaymentStatus.PAID.value:
            next_payment = PaymentService._spawn_next(ctx, payment)

        commit_or_conflict('MARK_PAID')
        logger.info(f"[MARK_PAID] Payment {payment.id} {new_status}: ${amount_paid} on {paid_on}")
        return payment, next_payment

    @staticmethod
    def _spawn_next(ctx, payment):
        if not payment.next_due_date:
            return None

        existing = Payment.query.filter(
            Payment.family_id == ctx.family_id,
            Payment.payee == payment.payee,
            Payment.due_date == payment.next_due_date,
            Payment.status != PaymentStatus.CANCELLED.value,
        ).first()
        if existing:
            return None

        next_payment = Payment(
            family_id=ctx.family_id,
            payee=payment.payee,
            amount=payment.amount,
            due_date=payment.next_due_date,
            payment_type=payment.payment_type,
            frequency=payment.frequency,
            next_due_date=next_occurrence(payment.next_due_date, payment.frequency),
            status=PaymentStatus.SCHEDULED.value,
            spending_category_id=payment.spending_category_id,
            auto_pay_enabled=payment.auto_pay_enabled,
            notes=payment.notes,
        )
        db.session.add(next_payment)
        db.session.flush()
        AuditService.record(ctx, 'create', 'payment', next_payment.id, None, next_payment.to_dict())
        logger.info(f"[MARK_PAID] Scheduled next {payment.payee} payment on {next_payment.due_date}")
        return next_payment

    @staticmethod
    def cancel(ctx, payment_id):
        """Soft delete; attributed income flows back to the income events"""
        ctx.require('can_edit_payments')
        payment = lock_payment(ctx, payment_id)

        if not payment.can_transition_to(PaymentStatus.CANCELLED.value):
            raise InvalidStatusTransition(f"Cannot cancel a {payment.status} payment")

        old_values = payment.to_dict()
        for attribution in list(payment.attributions):
            event = lock_income_event(ctx, attribution.income_event_id)
            event.allocated_amount = max(ZERO, round_currency(event.allocated_amount - attribution.amount))
            event.recalculate_remaining()
            AuditService.record(ctx, 'delete', 'payment_attribution', attribution.id,
                                attribution.to_dict(), None)
            payment.attributions.remove(attribution)
            db.session.delete(attribution)

        payment.status = PaymentStatus.CANCELLED.value
        AuditService.record(ctx, 'delete', 'payment', payment.id, old_values, payment.to_dict())
        commit_or_conflict('CANCEL_PAYMENT')
        logger.info(f"[CANCEL_PAYMENT] Payment {payment.id} cancelled")
        return payment

    @staticmethod
    def _filtered_query(ctx, filters, today):
        query = Payment.query.filter(Payment.family_id == ctx.family_id)

        status = filters.get('status')
        if status == PaymentStatus.OVERDUE.value:
            query = query.filter(Payment.status == PaymentStatus.SCHEDULED.value,
                                 Payment.due_date < today)
        elif status:
            query = query.filter(Payment.status == status)

        if filters.get('start_date'):
            query = query.filter(Payment.due_date >= filters['start_date'])
        if filters.get('end_date'):
            query = query.filter(Payment.due_date <= filters['end_date'])
        if filters.get('spending_category_id'):
            query = query.filter(Payment.spending_category_id == filters['spending_category_id'])
        if filters.get('payment_type'):
            query = query.filter(Payment.payment_type == filters['payment_type'])
        if filters.get('search'):
            term = filters['search'].lower()
            query = query.filter(or_(
                func.lower(Payment.payee).contains(term, autoescape=True),
                func.lower(Payment.notes).contains(term, autoescape=True),
            ))
        return query

    @staticmethod
    def list_payments(ctx, filters=None, limit=50, offset=0, today=None):
        """
        Page of the family's payments ordered by due date.

        The `overdue` status filter matches scheduled payments past their
        due date; `scheduled` matches the stored status, overdue rows included.

        Returns:
            tuple: (payments, total)
        """
        today = today or date.today()
        query = PaymentService._filtered_query(ctx, filters or {}, today)
        total = query.count()
        payments = query.order_by(Payment.due_date, Payment.id).offset(offset).limit(limit).all()
        return payments, total

    @staticmethod
    def overdue(ctx, limit=50, offset=0, today=None):
        today = today or date.today()
        query = PaymentService._filtered_query(ctx, {'status': PaymentStatus.OVERDUE.value}, today)
        total = query.count()
        total_amount = query.with_entities(func.coalesce(func.sum(Payment.amount), 0)).scalar()
        payments = query.order_by(Payment.due_date, Payment.id).offset(offset).limit(limit).all()
        return payments, total, round_currency(total_amount)

    @staticmethod
    def upcoming(ctx, days=None, today=None):
        """Open payments due between today and today + days"""
        days = days or current_app.config['UPCOMING_DAYS']
        today = today or date.today()
        return Payment.query.filter(
            Payment.family_id == ctx.family_id,
            Payment.status.in_([PaymentStatus.SCHEDULED.value, PaymentStatus.PARTIAL.value]),
            Payment.due_date >= today,
            Payment.due_date <= today + timedelta(days=days),
        ).order_by(Payment.due_date, Payment.id).all()

    @staticmethod
    def summary(ctx, start_date=None, end_date=None, today=None):
        today = today or date.today()
        query = PaymentService._filtered_query(
            ctx, {'start_date': start_date, 'end_date': end_date}, today
        )

        counts = {status: 0 for status in STORED_PAYMENT_STATUSES}
        counts[PaymentStatus.OVERDUE.value] = 0
        total_due = total_paid = total_outstanding = overdue_amount = ZERO
        by_category = {}

        for payment in query.all():
            counts[payment.status] += 1
            if payment.status == PaymentStatus.CANCELLED.value:
                continue

            paid = payment.paid_amount or ZERO
            total_due += payment.amount
            total_paid += paid
            if payment.status in (PaymentStatus.SCHEDULED.value, PaymentStatus.PARTIAL.value):
                total_outstanding += max(ZERO, payment.amount - paid)
            if payment.is_overdue(today):
                counts[PaymentStatus.OVERDUE.value] += 1
                overdue_amount += payment.amount

            name = payment.spending_category.name if payment.spending_category else 'Uncategorized'
            bucket = by_category.setdefault(name, {'due': ZERO, 'paid': ZERO, 'count': 0})
            bucket['due'] += payment.amount
            bucket['paid'] += paid
            bucket['count'] += 1

        return {
            'startDate': start_date.isoformat() if start_date else None,
            'endDate': end_date.isoformat() if end_date else None,
            'totalDue': as_float(total_due),
            'totalPaid': as_float(total_paid),
            'totalOutstanding': as_float(total_outstanding),
            'overdueAmount': as_float(overdue_amount),
            'counts': counts,
            'byCategory': [
                {'category': name, 'due': as_float(v['due']), 'paid': as_float(v['paid']), 'count': v['count']}
                for name, v in sorted(by_category.items(), key=lambda kv: kv[1]['due'], reverse=True)
            ],
        }

    @staticmethod
    def bulk_create(ctx, items):
        """
        Create many payments; invalid items are reported, valid ones saved.

        Returns:
            tuple: (created_payments, errors)
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
                payment = PaymentService.build(ctx, item)
            except ValidationError as e:
                errors.append({
                    'index': index,
                    'error': e.message,
                    'details': {'field': e.field, 'code': e.code},
                })
                continue
            db.session.add(payment)
            created.append(payment)

        if created:
            db.session.flush()
            for payment in created:
                AuditService.record(ctx, 'create', 'payment', payment.id, None, payment.to_dict())
            commit_or_conflict('BULK_PAYMENT')

        logger.info(f"[BULK_PAYMENT] Family {ctx.family_id}: {len(created)} created, {len(errors)} rejected")
        return created, errors
