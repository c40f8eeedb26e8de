# app/routes/tracker/budgeting/__init__.py

"""Budget categories, allocations and reports routes"""

from flask import Blueprint

# Paths are absolute (/budget-categories, /budget-allocations, /reports)
budgeting_bp = Blueprint(
    'budgeting',
    __name__
)

# Import routes after blueprint creation to avoid circular imports
from . import analytics, api
