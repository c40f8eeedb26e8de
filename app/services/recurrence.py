# app/services/recurrence.py - Next occurrence for recurring income and payments

from dateutil.relativedelta import relativedelta
from models import Frequency

# relativedelta clamps to the last day of shorter months (Jan 31 -> Feb 28/29)
_STEPS = {
    Frequency.WEEKLY.value: relativedelta(weeks=1),
    Frequency.BIWEEKLY.value: relativedelta(weeks=2),
    Frequency.MONTHLY.value: relativedelta(months=1),
    Frequency.QUARTERLY.value: relativedelta(months=3),
    Frequency.ANNUAL.value: relativedelta(years=1),
}

FREQUENCIES = [f.value for f in Frequency]


def next_occurrence(current_date, frequency):
    """
    Date of the next occurrence after current_date, or None for one-off items.

    Raises ValueError for an unknown frequency.
    """
    if isinstance(frequency, Frequency):
        frequency = frequency.value
    if frequency == Frequency.ONCE.value:
        return None
    try:
        step = _STEPS[frequency]
    except KeyError:
        raise ValueError(f"Unknown frequency: {frequency}")
    return current_date + step
