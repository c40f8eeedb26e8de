# models/payment_models.py - Bills, obligations and their links to income

from datetime import datetime, date
from models.models import db, Frequency
from models.budget_helpers import as_float, round_currency, ZERO
import enum


class PaymentStatus(str, enum.Enum):
    SCHEDULED = 'scheduled'
    PAID = 'paid'
    OVERDUE = 'overdue'  # display only, never stored
    PARTIAL = 'partial'
    CANCELLED = 'cancelled'


class PaymentType(str, enum.Enum):
    ONCE = 'once'
    RECURRING = 'recurring'
    VARIABLE = 'variable'


class AttributionType(str, enum.Enum):
    MANUAL = 'manual'
    AUTOMATIC = 'automatic'


PAYMENT_TRANSITIONS = {
    PaymentStatus.SCHEDULED.value: {
        PaymentStatus.PAID.value, PaymentStatus.PARTIAL.value, PaymentStatus.CANCELLED.value
    },
    PaymentStatus.PARTIAL.value: {
        PaymentStatus.PAID.value, PaymentStatus.PARTIAL.value, PaymentStatus.CANCELLED.value
    },
    PaymentStatus.PAID.value: set(),
    PaymentStatus.CANCELLED.value: set(),
}

# Statuses a payment can be stored with
STORED_PAYMENT_STATUSES = [s.value for s in PaymentStatus if s is not PaymentStatus.OVERDUE]


class Payment(db.Model):
    __tablename__ = "payment"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)
    family = db.relationship("Family")

    payee = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    due_date = db.Column(db.Date, nullable=False, index=True)

    payment_type = db.Column(db.String(20), nullable=False, default=PaymentType.ONCE.value)
    frequency = db.Column(db.String(20), nullable=False, default=Frequency.ONCE.value)
    next_due_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.SCHEDULED.value, index=True)
    paid_date = db.Column(db.Date, nullable=True)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=True)

    spending_category_id = db.Column(db.Integer, db.ForeignKey("budget_category.id"), nullable=True)
    spending_category = db.relationship("BudgetCategory")

    auto_pay_enabled = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    attributions = db.relationship("PaymentAttribution", back_populates="payment")

    def can_transition_to(self, new_status):
        return new_status in PAYMENT_TRANSITIONS.get(self.status, set())

    def is_settled(self):
        return self.status in (PaymentStatus.PAID.value, PaymentStatus.CANCELLED.value)

    def is_overdue(self, today=None):
        today = today or date.today()
        return self.status == PaymentStatus.SCHEDULED.value and self.due_date < today

    def days_past_due(self, today=None):
        today = today or date.today()
        return max(0, (today - self.due_date).days)

    @property
    def attributed_amount(self):
        return round_currency(sum((a.amount for a in self.attributions), ZERO))

    def display_status(self, today=None):
        if self.is_overdue(today):
            return PaymentStatus.OVERDUE.value
        return self.status

    def to_dict(self, today=None):
        """Convert to dictionary; overdue fields are computed for `today`"""
        today = today or date.today()
        return {
            'id': self.id,
            'familyId': self.family_id,
            'payee': self.payee,
            'amount': as_float(self.amount),
            'dueDate': self.due_date.isoformat(),
            'paymentType': self.payment_type,
            'frequency': self.frequency,
            'nextDueDate': self.next_due_date.isoformat() if self.next_due_date else None,
            'status': self.status,
            'displayStatus': self.display_status(today),
            'isOverdue': self.is_overdue(today),
            'daysPastDue': self.days_past_due(today) if self.is_overdue(today) else 0,
            'paidDate': self.paid_date.isoformat() if self.paid_date else None,
            'paidAmount': as_float(self.paid_amount),
            'spendingCategoryId': self.spending_category_id,
            'spendingCategoryName': self.spending_category.name if self.spending_category else None,
            'autoPayEnabled': self.auto_pay_enabled,
            'attributedAmount': as_float(self.attributed_amount),
            'notes': self.notes,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Payment {self.payee} ${self.amount} due {self.due_date}>'


class PaymentAttribution(db.Model):
    """Portion of an income event earmarked for a payment"""
    __tablename__ = "payment_attribution"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)

    income_event_id = db.Column(db.Integer, db.ForeignKey("income_event.id"), nullable=False, index=True)
    income_event = db.relationship("IncomeEvent", back_populates="attributions")

    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), nullable=False, index=True)
    payment = db.relationship("Payment", back_populates="attributions")

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    attribution_type = db.Column(db.String(20), nullable=False, default=AttributionType.MANUAL.value)

    created_by = db.Column(db.Integer, db.ForeignKey("family_member.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'incomeEventId': self.income_event_id,
            'incomeEventName': self.income_event.name if self.income_event else None,
            'paymentId': self.payment_id,
            'payee': self.payment.payee if self.payment else None,
            'amount': as_float(self.amount),
            'attributionType': self.attribution_type,
            'createdBy': self.created_by,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<PaymentAttribution income={self.income_event_id} payment={self.payment_id} ${self.amount}>'
