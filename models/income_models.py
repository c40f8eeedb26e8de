# models/income_models.py - Income tracking models

from datetime import datetime
from models.models import db, Frequency
from models.budget_helpers import as_float, round_currency, ZERO
import enum


class IncomeStatus(str, enum.Enum):
    SCHEDULED = 'scheduled'
    RECEIVED = 'received'
    CANCELLED = 'cancelled'


# Allowed status changes; anything missing here is rejected
INCOME_TRANSITIONS = {
    IncomeStatus.SCHEDULED.value: {IncomeStatus.RECEIVED.value, IncomeStatus.CANCELLED.value},
    IncomeStatus.RECEIVED.value: set(),
    IncomeStatus.CANCELLED.value: set(),
}


class IncomeEvent(db.Model):
    """Expected or received income for a family"""
    __tablename__ = "income_event"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)
    family = db.relationship("Family")

    name = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    # Recurrence settings
    scheduled_date = db.Column(db.Date, nullable=False, index=True)
    frequency = db.Column(db.String(20), nullable=False, default=Frequency.ONCE.value)
    next_occurrence = db.Column(db.Date, nullable=True)

    source = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=IncomeStatus.SCHEDULED.value, index=True)

    # Set when marked received
    actual_date = db.Column(db.Date, nullable=True)
    actual_amount = db.Column(db.Numeric(12, 2), nullable=True)

    # Running balance kept in step with attributions
    allocated_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)
    remaining_amount = db.Column(db.Numeric(12, 2), nullable=False, default=ZERO)

    notes = db.Column(db.Text, nullable=True)

    # Optimistic concurrency counter, bumped on every UPDATE
    version_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    attributions = db.relationship("PaymentAttribution", back_populates="income_event")
    budget_allocations = db.relationship("BudgetAllocation", back_populates="income_event",
                                         cascade="all, delete-orphan")

    __mapper_args__ = {'version_id_col': version_id}

    @property
    def effective_amount(self):
        """Actual amount once received, otherwise the expected amount"""
        return self.actual_amount if self.actual_amount is not None else self.amount

    def can_transition_to(self, new_status):
        return new_status in INCOME_TRANSITIONS.get(self.status, set())

    def recalculate_remaining(self):
        self.remaining_amount = round_currency(self.effective_amount - (self.allocated_amount or ZERO))
        return self.remaining_amount

    def is_recurring(self):
        return self.frequency != Frequency.ONCE.value

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            'id': self.id,
            'familyId': self.family_id,
            'name': self.name,
            'amount': as_float(self.amount),
            'scheduledDate': self.scheduled_date.isoformat(),
            'frequency': self.frequency,
            'nextOccurrence': self.next_occurrence.isoformat() if self.next_occurrence else None,
            'source': self.source,
            'status': self.status,
            'actualDate': self.actual_date.isoformat() if self.actual_date else None,
            'actualAmount': as_float(self.actual_amount),
            'allocatedAmount': as_float(self.allocated_amount),
            'remainingAmount': as_float(self.remaining_amount),
            'notes': self.notes,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<IncomeEvent {self.name} ${self.amount} on {self.scheduled_date}>'
