from datetime import datetime, date, timezone
from dateutil.relativedelta import relativedelta
import pytz


def utc_now():
    """Current UTC time as a naive datetime, the form every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def firm_today(tz_name='UTC'):
    """Today's date in the firm's timezone"""
    return datetime.now(pytz.timezone(tz_name)).date()

def start_of_day(value):
    return datetime(value.year, value.month, value.day)

def parse_iso_datetime(value):
    """
    Parse an ISO 8601 date or datetime string into a naive UTC datetime.

    Accepts a trailing 'Z' and explicit offsets; aware values are converted to UTC.
    """
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError as e:
        raise ValueError(f"Invalid date/time format: {e}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def add_frequency(value, frequency, times=1):
    """Step a date forward by a WEEKLY/MONTHLY/QUARTERLY/YEARLY frequency"""
    if frequency == 'WEEKLY':
        return value + relativedelta(weeks=times)
    if frequency == 'MONTHLY':
        return value + relativedelta(months=times)
    if frequency == 'QUARTERLY':
        return value + relativedelta(months=3 * times)
    if frequency == 'YEARLY':
        return value + relativedelta(years=times)
    raise ValueError(f"Unknown frequency: {frequency}")

def month_bounds(year, month):
    """First instant of the month and first instant of the following month"""
    start = datetime(year, month, 1)
    return start, start + relativedelta(months=1)
