# app/services/validation.py - Input parsing shared by the stores and routes

from datetime import datetime
from decimal import Decimal
from flask import current_app, request
from models import round_currency, to_decimal
from app.errors import ValidationError
import re

MAX_AMOUNT = Decimal('9999999999.99')
COLOR_PATTERN = re.compile(r'^#[0-9A-Fa-f]{6}$')


def require_json():
    """Request body as a dict, or ValidationError"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def parse_string(value, field, required=True, max_length=255):
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", field=field)
    return value


def parse_amount(value, field='amount', required=True, allow_zero=False):
    """Positive money value rounded to cents"""
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    amount = to_decimal(value)
    if amount is None:
        raise ValidationError(f"{field} must be a number", field=field)
    # Range checks run before rounding; quantize fails past 28 significant digits
    if amount < 0:
        qualifier = 'zero or greater' if allow_zero else 'greater than zero'
        raise ValidationError(f"{field} must be {qualifier}", field=field)
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large", field=field)
    amount = round_currency(amount)
    if amount == 0 and not allow_zero:
        raise ValidationError(f"{field} must be greater than zero", field=field)
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large", field=field)
    return amount


def parse_percentage(value, field='targetPercentage', required=True):
    """Percentage between 0 and 100 inclusive"""
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    pct = to_decimal(value)
    if pct is None:
        raise ValidationError(f"{field} must be a number", field=field)
    if pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100", field=field)
    return round_currency(pct)


def parse_date(value, field, required=True):
    """YYYY-MM-DD string to date"""
    if value is None or value == '':
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format", field=field)
    try:
        return datetime.strptime(value.strip(), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format", field=field)


def parse_choice(value, field, choices, required=True, default=None):
    if value is None:
        if default is not None:
            return default
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}", field=field)
    return value


def parse_bool(value, field, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false', '1', '0'):
        return value.lower() in ('true', '1')
    raise ValidationError(f"{field} must be true or false", field=field)


def parse_int(value, field, required=True, minimum=None, maximum=None):
    if value is None or value == '':
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field} must be an integer", field=field)
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", field=field)
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", field=field)
    return number


def parse_color(value, field='color', required=False):
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    if not isinstance(value, str) or not COLOR_PATTERN.match(value):
        raise ValidationError(f"{field} must be a hex color like #1A2B3C", field=field)
    return value.upper()


def parse_date_range(args, required=False):
    """startDate/endDate query params; start must not be after end"""
    start_date = parse_date(args.get('startDate'), 'startDate', required=required)
    end_date = parse_date(args.get('endDate'), 'endDate', required=required)
    if start_date and end_date and start_date > end_date:
        raise ValidationError('startDate must be on or before endDate', field='startDate')
    return start_date, end_date


def parse_pagination(args):
    """limit (1..MAX_PAGE_SIZE) and offset (>= 0) from query params"""
    limit = parse_int(args.get('limit'), 'limit', required=False,
                      minimum=1, maximum=current_app.config['MAX_PAGE_SIZE'])
    offset = parse_int(args.get('offset'), 'offset', required=False, minimum=0)
    if limit is None:
        limit = current_app.config['DEFAULT_PAGE_SIZE']
    return limit, offset or 0


def pagination_dict(total, limit, offset):
    return {
        'total': total,
        'limit': limit,
        'offset': offset,
        'hasMore': offset + limit < total,
    }


def reject_unknown_fields(data, allowed):
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", field=unknown[0])


def optional_json():
    """Request body as a dict; an empty body counts as {}"""
    if not request.get_data():
        return {}
    return require_json()
