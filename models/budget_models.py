# models/budget_models.py - Budget categories and per-income allocations

from models.models import db
from models.budget_helpers import as_float
from datetime import datetime


class BudgetCategory(db.Model):
    """
    Named percentage bucket for a family's income.

    Active categories of one family never add up to more than 100%.
    Categories referenced by allocations or payments are deactivated
    rather than deleted.
    """
    __tablename__ = "budget_category"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)
    family = db.relationship("Family")

    name = db.Column(db.String(100), nullable=False)
    target_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    color = db.Column(db.String(7), nullable=False, default='#6B7280')
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    allocations = db.relationship("BudgetAllocation", back_populates="budget_category")

    def to_dict(self):
        return {
            'id': self.id,
            'familyId': self.family_id,
            'name': self.name,
            'targetPercentage': as_float(self.target_percentage),
            'color': self.color,
            'sortOrder': self.sort_order,
            'isActive': self.is_active,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<BudgetCategory {self.name} {self.target_percentage}%>'


class BudgetAllocation(db.Model):
    """Amount of one income event set aside for one category"""
    __tablename__ = "budget_allocation"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)

    income_event_id = db.Column(db.Integer, db.ForeignKey("income_event.id"), nullable=False, index=True)
    income_event = db.relationship("IncomeEvent", back_populates="budget_allocations")

    budget_category_id = db.Column(db.Integer, db.ForeignKey("budget_category.id"), nullable=False, index=True)
    budget_category = db.relationship("BudgetCategory", back_populates="allocations")

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('income_event_id', 'budget_category_id', name='uq_allocation_event_category'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'incomeEventId': self.income_event_id,
            'budgetCategoryId': self.budget_category_id,
            'categoryName': self.budget_category.name if self.budget_category else None,
            'color': self.budget_category.color if self.budget_category else None,
            'amount': as_float(self.amount),
            'percentage': as_float(self.percentage),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<BudgetAllocation event={self.income_event_id} category={self.budget_category_id} ${self.amount}>'
