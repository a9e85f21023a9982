"""Turn colloquial time phrases into ISO date ranges.

``parse_time_reference("last 6 months", today)`` returns ``(start, end)`` as
``YYYY-MM-DD`` strings. Open-ended phrases ("before 2023", "since 2021") leave
one side as ``None``. Unrecognised text returns ``None``.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, timedelta

DateRange = tuple[str | None, str | None]

_WRITTEN_NUMBERS = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "eighteen": 18,
    "twenty": 20,
    "thirty": 30,
}

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "quarter": 90, "year": 365}

# Checked in order; "months" before "month" so "few months" gets the wider window.
_UNIT_DEFAULTS = (("week", 7), ("months", 180), ("month", 30), ("quarter", 90), ("year", 365))

_VAGUE_WINDOWS = {
    "near future": (0, 180),
    "short term": (0, 180),
    "medium term": (180, 730),
    "long term": (730, 1825),
    "immediately": (0, 30),
    "recently": (-90, 0),
    "shortly": (0, 60),
    "little while": (0, 90),
    "soon": (0, 90),
}

_MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_FUTURE_WORDS = ("next", "coming", "upcoming", "future")
_PAST_WORDS = ("last", "past", "previous", "recent")

_NUMERIC_RE = re.compile(r"(\d+)\s*(day|week|month|quarter|year)s?\b")
_US_DATE_RE = re.compile(r"\b(\d{1,2})[-/](\d{1,2})[-/](\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})[-/](\d{1,2})[-/](\d{1,2})\b")
_YEAR_RANGE_RES = (
    re.compile(r"between\s+(20\d{2})\s+(?:and|to|through|thru)\s+(20\d{2})\b"),
    re.compile(r"\b(20\d{2})\s*(?:and|to|through|thru|-|–)\s*(20\d{2})\b"),
)
_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_QUARTER_RE = re.compile(r"\bq([1-4])\s+(\d{4})\b")
_NAMED_QUARTER_RE = re.compile(r"\b(first|second|third|fourth)\s+quarter\s+(?:of\s+)?(\d{4})\b")
_MONTH_RANGE_RE = re.compile(r"between\s+([a-z]+)\s+and\s+([a-z]+)\s+(\d{4})")


def _iso(value: date) -> str:
    return value.isoformat()


def _window(today: date, start_days: int, end_days: int) -> DateRange:
    return _iso(today + timedelta(days=start_days)), _iso(today + timedelta(days=end_days))


def _year_range(start_year: int, end_year: int | None = None) -> DateRange:
    return f"{start_year}-01-01", f"{end_year or start_year}-12-31"


def _quarter_range(year: int, quarter: int) -> DateRange:
    first_month = 3 * (quarter - 1) + 1
    last_month = first_month + 2
    last_day = calendar.monthrange(year, last_month)[1]
    return f"{year}-{first_month:02d}-01", f"{year}-{last_month:02d}-{last_day:02d}"


def _replace_written_numbers(text: str) -> str:
    for word, number in _WRITTEN_NUMBERS.items():
        text = re.sub(rf"\b{word}\b", str(number), text)
    return text


def _directional(text: str) -> DateRange | None:
    match = re.search(r"\b(?:before|prior\s+to)\s+(20\d{2})\b", text)
    if match:
        return None, f"{int(match.group(1)) - 1}-12-31"
    match = re.search(r"\b(?:until|through|up\s+to)\s+(20\d{2})\b", text)
    if match:
        return None, f"{match.group(1)}-12-31"
    match = re.search(r"\bafter\s+(20\d{2})\b", text)
    if match:
        return f"{int(match.group(1)) + 1}-01-01", None
    match = re.search(r"\b(?:since|from)\s+(20\d{2})\b(?!\s*(?:and|to|through|thru|-))", text)
    if match:
        return f"{match.group(1)}-01-01", None
    return None


def _specific_date(text: str) -> DateRange | None:
    parsed: date | None = None
    match = _US_DATE_RE.search(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        parsed = _safe_date(year, month, day)
    if parsed is None:
        match = _ISO_DATE_RE.search(text)
        if match:
            year, month, day = (int(part) for part in match.groups())
            parsed = _safe_date(year, month, day)
    if parsed is None:
        return None

    is_from = any(marker in text for marker in ("from ", "starting ", "after ", "since "))
    is_to = any(marker in text for marker in (" to ", "until ", "before ", "ending "))
    if is_from and not is_to:
        return _iso(parsed), None
    if is_to and not is_from:
        return None, _iso(parsed)
    return _iso(parsed), _iso(parsed)


def _safe_date(year: int, month: int, day: int) -> date | None:
    if not 2000 <= year <= 2100:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _numeric(text: str, today: date) -> DateRange | None:
    match = _NUMERIC_RE.search(_replace_written_numbers(text))
    if not match:
        return None
    days = int(match.group(1)) * _UNIT_DAYS[match.group(2)]
    if any(word in text for word in _PAST_WORDS):
        return _window(today, -days, 0)
    return _window(today, 0, days)


def _relative(text: str, today: date, *, future: bool) -> DateRange:
    numeric = _numeric(text, today)
    if numeric:
        return numeric
    days = 30
    for unit, unit_days in _UNIT_DEFAULTS:
        if unit in text:
            days = unit_days
            break
    return _window(today, 0, days) if future else _window(today, -days, 0)


def _month_range(text: str) -> DateRange | None:
    match = _MONTH_RANGE_RE.search(text)
    if not match:
        return None
    start_month = _MONTHS.get(match.group(1)[:3])
    end_month = _MONTHS.get(match.group(2)[:3])
    if not start_month or not end_month:
        return None
    year = int(match.group(3))
    last_day = calendar.monthrange(year, end_month)[1]
    return f"{year}-{start_month:02d}-01", f"{year}-{end_month:02d}-{last_day:02d}"


def parse_time_reference(text: str, today: date | None = None) -> DateRange | None:
    if not text or not text.strip():
        return None
    today = today or date.today()
    ref = " ".join(text.lower().split())

    for parser in (_directional, _specific_date):
        result = parser(ref)
        if result:
            return result

    if "next year" in ref:
        return _year_range(today.year + 1)
    if any(phrase in ref for phrase in ("previous year", "last year", "prior year")):
        return _year_range(today.year - 1)
    if "this year" in ref or "current year" in ref:
        return _year_range(today.year)
    if "this quarter" in ref or "current quarter" in ref:
        return _quarter_range(today.year, (today.month - 1) // 3 + 1)

    if any(word in ref for word in _FUTURE_WORDS):
        return _relative(ref, today, future=True)
    if any(word in ref for word in _PAST_WORDS):
        return _relative(ref, today, future=False)

    for phrase, (start_days, end_days) in _VAGUE_WINDOWS.items():
        if phrase in ref:
            return _window(today, start_days, end_days)

    match = _QUARTER_RE.search(ref)
    if match:
        return _quarter_range(int(match.group(2)), int(match.group(1)))
    match = _NAMED_QUARTER_RE.search(ref)
    if match:
        quarter = ("first", "second", "third", "fourth").index(match.group(1)) + 1
        return _quarter_range(int(match.group(2)), quarter)

    month_range = _month_range(ref)
    if month_range:
        return month_range

    for pattern in _YEAR_RANGE_RES:
        match = pattern.search(ref)
        if match:
            return _year_range(int(match.group(1)), int(match.group(2)))
    match = _YEAR_RE.search(ref)
    if match:
        return _year_range(int(match.group(1)))

    return _numeric(ref, today)
