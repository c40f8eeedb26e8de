# app/services/tracker/budgeting/__init__.py

"""
Reporting service package.

Read-only rollups over income events and payments.
"""

from .analytics_service import ReportingService

__all__ = ['ReportingService']
