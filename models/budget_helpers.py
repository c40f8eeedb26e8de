# models/budget_helpers.py - Money, calendar and statistics helpers shared by services

from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from dateutil.relativedelta import relativedelta

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


# ============================================================================
# MONEY
# ============================================================================

def round_currency(value):
    """
    Round to cents using ROUND_HALF_UP.

    Every stored amount and every computed allocation goes through here so
    the same rule applies everywhere.
    """
    if value is None:
        return None
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value):
    """Convert user input to Decimal, or None when it is not a number"""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def as_float(value):
    """JSON-friendly money value"""
    if value is None:
        return None
    return float(round_currency(value))


def percentage_of(part, whole):
    """part / whole * 100, 0 when whole is zero"""
    part = Decimal(str(part or 0))
    whole = Decimal(str(whole or 0))
    if whole == 0:
        return 0.0
    return float((part / whole * 100).quantize(CENT, rounding=ROUND_HALF_UP))


# ============================================================================
# CALENDAR
# ============================================================================

def get_first_day_of_month(year, month):
    """Get first day of month"""
    return date(year, month, 1)


def get_last_day_of_month(year, month):
    """Get last day of month"""
    return date(year, month, 1) + relativedelta(months=1, days=-1)


def get_month_range(year, month):
    """Get (first_day, last_day) tuple for a month"""
    return (get_first_day_of_month(year, month),
            get_last_day_of_month(year, month))


def iter_months(start_date, end_date):
    """Yield (year, month) for every month touched by [start_date, end_date]"""
    current = date(start_date.year, start_date.month, 1)
    while current <= end_date:
        yield current.year, current.month
        current += relativedelta(months=1)


def months_between(start_date, end_date):
    """Number of calendar months touched by the range, at least 1"""
    return max(1, (end_date.year - start_date.year) * 12 + end_date.month - start_date.month + 1)


# ============================================================================
# STATISTICS
# ============================================================================

def calculate_variance(values):
    """
    Calculate variance (standard deviation) for a series of amounts.

    Returns:
        tuple: (mean, std_dev, coefficient_of_variation)
    """
    values = [float(v) for v in values]
    if not values:
        return (0, 0, 0)

    mean = sum(values) / len(values)

    if len(values) > 1:
        variance = sum((x - mean) ** 2 for x in values) / (len(values) - 1)
        std_dev = variance ** 0.5

        # Coefficient of variation (normalized measure)
        cv = (std_dev / mean * 100) if mean > 0 else 0

        return (mean, std_dev, cv)

    return (mean, 0, 0)


def calculate_trend(values):
    """
    Direction of a series from the slope of a least-squares line.

    Returns:
        str: 'increasing', 'decreasing' or 'stable'
    """
    values = [float(v) for v in values]
    if len(values) < 2:
        return 'stable'

    n = len(values)
    x_mean = (n - 1) / 2
    y_mean = sum(values) / n
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    slope = numerator / denominator if denominator else 0

    # Ignore slopes smaller than 1% of the average
    threshold = abs(y_mean) * 0.01
    if slope > threshold:
        return 'increasing'
    if slope < -threshold:
        return 'decreasing'
    return 'stable'
