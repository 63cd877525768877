"""
Date buckets and list filters shared by the records table and the dashboards.
"""
from dataclasses import dataclass, asdict
from datetime import date

from metrics import NO_BATCH

MONTH_NAMES = [
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December'
]

MONTHS_SHORT = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

PERIOD_ALL = 'all'
PERIOD_LAST_7 = 'last_7'
PERIOD_LAST_30 = 'last_30'
PERIOD_CURRENT_MONTH = 'current_month'

PERIOD_CHOICES = [
    (PERIOD_ALL, 'All time'),
    (PERIOD_LAST_7, 'Last 7 days'),
    (PERIOD_LAST_30, 'Last 30 days'),
    (PERIOD_CURRENT_MONTH, 'Current month'),
]

# Last day of the first half of a month
FORTNIGHT_SPLIT_DAY = 15


@dataclass
class RecordFilter:
    period: str = PERIOD_ALL
    year: str = ''
    month: str = ''
    fortnight: str = ''
    aviary: str = ''
    batch: str = ''
    search: str = ''

    @classmethod
    def from_args(cls, args):
        valid_periods = {p for p, _ in PERIOD_CHOICES}
        period = (args.get('period') or PERIOD_ALL).strip()
        return cls(
            period=period if period in valid_periods else PERIOD_ALL,
            year=(args.get('year') or '').strip(),
            month=(args.get('month') or '').strip(),
            fortnight=(args.get('fortnight') or '').strip(),
            aviary=(args.get('aviary') or '').strip(),
            batch=(args.get('batch') or '').strip(),
            search=(args.get('search') or '').strip(),
        )

    def is_empty(self):
        return self == RecordFilter()

    def to_args(self):
        """Non-default values only, for building query strings."""
        defaults = asdict(RecordFilter())
        return {k: v for k, v in asdict(self).items() if v != defaults[k]}


def parse_fortnight(value):
    """
    'YYYY-MM-1' / 'YYYY-MM-2' -> (year, month, half); None if malformed.
    """
    try:
        year, month, half = (int(p) for p in value.split('-'))
    except (ValueError, AttributeError):
        return None
    if not 1 <= month <= 12 or half not in (1, 2):
        return None
    return year, month, half

def fortnight_label(year, month, half):
    part = '1st' if half == 1 else '2nd'
    return f"{MONTHS_SHORT[month - 1]}/{year} - {part} Fortnight"

def year_options(records):
    return sorted({str(r.date.year) for r in records if r.date}, reverse=True)

def batch_options(records):
    return sorted({r.batch_id for r in records if r.batch_id and r.batch_id != NO_BATCH})

def fortnight_options(records, second_half_first=False):
    """
    Both halves of every month that has data, newest month first.
    """
    periods = sorted({(r.date.year, r.date.month) for r in records if r.date}, reverse=True)

    halves = (2, 1) if second_half_first else (1, 2)
    options = []
    for year, month in periods:
        for half in halves:
            options.append({
                'value': f"{year}-{month:02d}-{half}",
                'label': fortnight_label(year, month, half),
            })
    return options

def _matches_search(record, term):
    if not term:
        return True
    if term in record.date.isoformat():
        return True
    return term.lower() in (record.batch_id or '').lower()

def _matches_period(record, period, today):
    if period == PERIOD_ALL:
        return True

    diff_days = abs((today - record.date).days)
    if period == PERIOD_LAST_7:
        return diff_days <= 7
    if period == PERIOD_LAST_30:
        return diff_days <= 30
    if period == PERIOD_CURRENT_MONTH:
        return record.date.year == today.year and record.date.month == today.month
    return True

def filter_records(records, flt, today=None, newest_first=True):
    """
    Apply every active filter; rows without a date never match.
    Tables list newest first, dashboards oldest first.
    """
    today = today or date.today()
    fortnight = parse_fortnight(flt.fortnight) if flt.fortnight else None

    result = []
    for r in records:
        if not r.date:
            continue

        if not _matches_search(r, flt.search):
            continue

        if flt.aviary and r.aviary_id != flt.aviary:
            continue

        if flt.batch and r.batch_id != flt.batch:
            continue

        if flt.year and str(r.date.year) != flt.year:
            continue

        if flt.month and str(r.date.month) != flt.month.lstrip('0'):
            continue

        if fortnight:
            f_year, f_month, f_half = fortnight
            if r.date.year != f_year or r.date.month != f_month:
                continue
            if f_half == 1 and r.date.day > FORTNIGHT_SPLIT_DAY:
                continue
            if f_half == 2 and r.date.day <= FORTNIGHT_SPLIT_DAY:
                continue

        if not _matches_period(r, flt.period, today):
            continue

        result.append(r)

    result.sort(key=lambda r: r.date, reverse=newest_first)
    return result
