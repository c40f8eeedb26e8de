# models/__init__.py

# Import the main db instance and base models
from .models import *
from .income_models import *
from .payment_models import *
from .budget_models import *
from .budget_helpers import *

# Make sure all models are available when importing from models
__all__ = [
    'db', 'Family', 'FamilyMember', 'AuditLog',
    'Role', 'Frequency', 'PERMISSION_FLAGS', 'ROLE_PERMISSIONS',
    'IncomeEvent', 'IncomeStatus', 'INCOME_TRANSITIONS',
    'Payment', 'PaymentAttribution', 'PaymentStatus', 'PaymentType', 'AttributionType',
    'PAYMENT_TRANSITIONS', 'STORED_PAYMENT_STATUSES',
    'BudgetCategory', 'BudgetAllocation',
    # Helper functions
    'CENT', 'ZERO',
    'round_currency',
    'to_decimal',
    'as_float',
    'percentage_of',
    'get_first_day_of_month',
    'get_last_day_of_month',
    'get_month_range',
    'iter_months',
    'months_between',
    'calculate_variance',
    'calculate_trend',
]
