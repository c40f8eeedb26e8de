# app/errors.py - Error types raised by services and mapped to JSON responses


class AppError(Exception):
    """Base class for errors that carry an HTTP status and a stable code"""
    status_code = 500
    error = 'Internal Server Error'
    code = 'INTERNAL_ERROR'

    def __init__(self, message=None, code=None, field=None, details=None):
        super().__init__(message or self.error)
        self.message = message or self.error
        if code:
            self.code = code
        self.field = field
        self.details = details

    def to_dict(self):
        payload = {
            'success': False,
            'error': self.error,
            'message': self.message,
            'code': self.code,
        }
        if self.field:
            payload['field'] = self.field
        if self.details is not None:
            payload['details'] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    error = 'Validation Error'
    code = 'VALIDATION_ERROR'


class BudgetPercentageExceeded(ValidationError):
    code = 'BUDGET_PERCENTAGE_EXCEEDED'


class CannotUpdatePaidPayment(ValidationError):
    code = 'CANNOT_UPDATE_PAID_PAYMENT'


class PaymentNotEditable(ValidationError):
    code = 'PAYMENT_NOT_EDITABLE'


class IncomeEventNotEditable(ValidationError):
    code = 'INCOME_EVENT_NOT_EDITABLE'


class InvalidStatusTransition(ValidationError):
    code = 'INVALID_STATUS_TRANSITION'


class PaymentAlreadySettled(ValidationError):
    code = 'PAYMENT_ALREADY_SETTLED'


class AuthenticationError(AppError):
    status_code = 401
    error = 'Unauthorized'
    code = 'AUTHENTICATION_REQUIRED'


class ForbiddenError(AppError):
    status_code = 403
    error = 'Forbidden'
    code = 'FORBIDDEN'


class NotFoundError(AppError):
    status_code = 404
    error = 'Not Found'
    code = 'NOT_FOUND'


class ConflictError(AppError):
    status_code = 409
    error = 'Conflict'
    code = 'CONFLICT'


class DuplicateCategoryName(ConflictError):
    code = 'DUPLICATE_CATEGORY_NAME'


class InsufficientRemainingIncome(ConflictError):
    code = 'INSUFFICIENT_REMAINING_INCOME'


class InternalError(AppError):
    pass
