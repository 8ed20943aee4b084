"""
Club Portal — fiscal calendar

The club's fiscal year runs October 1 → September 30 and is named after
the calendar year it ends in. Every log date entering the system goes
through parse_log_date(); raw strings are never compared.
"""

import re
from datetime import date, datetime

FISCAL_YEAR_START_MONTH = 10

ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
US_SLASH_RE = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})"
    r"(?:\s+\d{1,2}:\d{2}(?::\d{2})?(?:\s*[ap]\.?m\.?)?)?$",
    flags=re.IGNORECASE,
)
LONG_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%B %d %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y", "%Y/%m/%d")


def _safe_date(year, month, day):
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_log_date(value):
    """Return a date for any of the historical encodings, else None.

    Accepted: date/datetime objects, ISO ``2024-03-09`` (time part ignored),
    US slash ``3/9/2024`` or ``3/9/24`` (spreadsheet ``0:00:00`` tails
    ignored) and long forms such as ``March 9, 2024``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    m = ISO_RE.match(text)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = US_SLASH_RE.match(text)
    if m:
        year = int(m.group(3))
        if len(m.group(3)) == 2:
            # Same pivot as strptime's %y.
            year += 2000 if year < 69 else 1900
        return _safe_date(year, int(m.group(1)), int(m.group(2)))

    for fmt in LONG_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            pass
    return None


def normalise_log_date(value):
    parsed = parse_log_date(value)
    return parsed.isoformat() if parsed else None


def fiscal_year(value):
    """Fiscal year of ``value``; 0 when the date cannot be parsed."""
    parsed = parse_log_date(value)
    if parsed is None:
        return 0
    if parsed.month >= FISCAL_YEAR_START_MONTH:
        return parsed.year + 1
    return parsed.year


def fiscal_year_bounds(fy):
    return date(fy - 1, FISCAL_YEAR_START_MONTH, 1), date(fy, 9, 30)


def fiscal_year_label(fy):
    start, end = fiscal_year_bounds(fy)
    return f"FY{fy} ({start:%b} {start.day}, {start.year} - {end:%b} {end.day}, {end.year})"
