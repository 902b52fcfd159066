"""
Relative date resolution for chat questions.

Every function takes an optional `today` so results are reproducible; ranges
are inclusive and returned as {"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}.
Weeks run Monday to Sunday.
"""
import calendar
import re
from datetime import date, timedelta
from typing import Dict, Optional

MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
_MONTH_ALT = "|".join(MONTHS)
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")


def _fmt(d: date) -> str:
    return d.isoformat()


def _range(start: date, end: date) -> Dict[str, str]:
    return {"start": _fmt(start), "end": _fmt(end)}


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _shift_months(d: date, months: int) -> date:
    idx = d.year * 12 + (d.month - 1) + months
    year, month = divmod(idx, 12)
    month += 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def _quarter_of(d: date) -> int:
    return (d.month - 1) // 3 + 1


def _quarter_range(year: int, quarter: int) -> Dict[str, str]:
    first_month = (quarter - 1) * 3 + 1
    return _range(date(year, first_month, 1), _month_end(year, first_month + 2))


def _valid_iso(text: str) -> Optional[date]:
    try:
        return date.fromisoformat(text)
    except (TypeError, ValueError):
        return None


def is_valid_date_range(value) -> bool:
    if not isinstance(value, dict):
        return False
    start = _valid_iso(str(value.get("start", "")))
    end = _valid_iso(str(value.get("end", "")))
    return start is not None and end is not None and start <= end


def date_context(today: Optional[date] = None) -> Dict[str, str]:
    """Reference dates handed to the parser prompt."""
    today = today or date.today()
    this_week_start = today - timedelta(days=today.weekday())
    last_week_end = this_week_start - timedelta(days=1)
    last_month_end = today.replace(day=1) - timedelta(days=1)
    return {
        "today": _fmt(today),
        "yesterday": _fmt(today - timedelta(days=1)),
        "this_week_start": _fmt(this_week_start),
        "last_week_start": _fmt(last_week_end - timedelta(days=6)),
        "last_week_end": _fmt(last_week_end),
        "this_month_start": _fmt(today.replace(day=1)),
        "last_month_start": _fmt(last_month_end.replace(day=1)),
        "last_month_end": _fmt(last_month_end),
        "last_7_days": _fmt(today - timedelta(days=7)),
        "last_30_days": _fmt(today - timedelta(days=30)),
    }


def default_range(today: Optional[date] = None) -> Dict[str, str]:
    today = today or date.today()
    return _range(today - timedelta(days=30), today)


def _month_range(month_idx: int, today: date, year: Optional[int] = None) -> Dict[str, str]:
    # a month later than the current one refers to last year
    if year is None:
        year = today.year - 1 if month_idx > today.month else today.year
    return _range(date(year, month_idx, 1), _month_end(year, month_idx))


def _find_month(text: str):
    """(month index, explicit year or None) for the first month name in text."""
    for m in re.finditer(rf"\b({_MONTH_ALT})\b(?:\s+(\d{{4}}))?", text):
        name = m.group(1)
        # "may" is only a month after a preposition or before a year
        if name == "may" and not m.group(2):
            before = text[:m.start()].rstrip()
            if not re.search(r"\b(in|for|during|of|since|from|to|until)$", before):
                continue
        return MONTHS.index(name) + 1, int(m.group(2)) if m.group(2) else None
    return None


def parse_from_to_range(expr: str, today: Optional[date] = None) -> Optional[Dict[str, str]]:
    """'from X to Y' with month names, 'last month to this month' or ISO dates."""
    today = today or date.today()
    m = re.search(r"\bfrom\s+(.+?)\s+(?:to|until|through)\s+(.+)", (expr or "").lower())
    if not m:
        return None
    from_part, to_part = m.group(1).strip(), m.group(2).strip()

    if "last month" in from_part and "this month" in to_part:
        last_month_start = _shift_months(today.replace(day=1), -1)
        return _range(last_month_start, today)

    from_iso = _ISO_DATE_RE.search(from_part)
    to_iso = _ISO_DATE_RE.search(to_part)
    if from_iso and to_iso:
        start, end = _valid_iso(from_iso.group(0)), _valid_iso(to_iso.group(0))
        if start and end:
            return _range(min(start, end), max(start, end))

    from_month = _find_month(f"in {from_part}")
    to_month = _find_month(f"in {to_part}")
    if from_month and to_month:
        (fm, fy), (tm, ty) = from_month, to_month
        end_year = ty or fy or today.year
        start_year = fy or (end_year - 1 if fm > tm else end_year)
        return _range(date(start_year, fm, 1), _month_end(end_year, tm))
    return None


def parse_relative_date(expr: str, today: Optional[date] = None) -> Dict[str, str]:
    """Resolve one relative expression; unknown input means the last 30 days."""
    today = today or date.today()
    lower = (expr or "").lower().strip()

    if "from" in lower and re.search(r"\b(to|until|through)\b", lower):
        resolved = parse_from_to_range(lower, today)
        if resolved:
            return resolved

    if lower in ("last month", "previous month", "past month"):
        end = today.replace(day=1) - timedelta(days=1)
        return _range(end.replace(day=1), end)
    if lower in ("this month", "current month"):
        return _range(today.replace(day=1), today)

    if lower in ("last week", "previous week", "past week"):
        this_monday = today - timedelta(days=today.weekday())
        return _range(this_monday - timedelta(days=7), this_monday - timedelta(days=1))
    if lower in ("this week", "current week"):
        return _range(today - timedelta(days=today.weekday()), today)

    if lower in ("last quarter", "previous quarter", "past quarter"):
        q = _quarter_of(today)
        return _quarter_range(today.year - 1, 4) if q == 1 else _quarter_range(today.year, q - 1)
    if lower in ("this quarter", "current quarter"):
        first_month = (_quarter_of(today) - 1) * 3 + 1
        return _range(date(today.year, first_month, 1), today)

    if lower in ("last year", "previous year", "past year"):
        return _range(date(today.year - 1, 1, 1), date(today.year - 1, 12, 31))
    if lower in ("this year", "current year"):
        return _range(date(today.year, 1, 1), today)

    qm = re.search(r"\bq\s*([1-4])\b|\bquarter\s+([1-4])\b|\b([1-4])(?:st|nd|rd|th)\s+quarter\b", lower)
    if qm:
        quarter = int(next(g for g in qm.groups() if g))
        year_m = re.search(r"\b(\d{4})\b", lower)
        if year_m:
            year = int(year_m.group(1))
        else:
            # a quarter that has not started yet refers to last year
            year = today.year - 1 if quarter > _quarter_of(today) else today.year
        return _quarter_range(year, quarter)

    nm = re.search(r"(\d+)\s*(day|week|month|year)s?\b", lower)
    if nm:
        n, unit = int(nm.group(1)), nm.group(2)
        if unit == "day":
            start = today - timedelta(days=n)
        elif unit == "week":
            start = today - timedelta(weeks=n)
        elif unit == "month":
            start = _shift_months(today, -n)
        else:
            start = _shift_months(today, -12 * n)
        return _range(start, today)

    month = _find_month(f"in {lower}")
    if month:
        return _month_range(month[0], today, month[1])

    return default_range(today)


_RELATIVE_RE = re.compile(
    r"\b(?:last|this|previous|current|past)\s+(?:month|week|quarter|year)\b"
    r"|\b(?:last|past|previous)\s+\d+\s+(?:day|week|month|year)s?\b"
    r"|\bq\s*[1-4]\b(?:\s+\d{4})?"
    r"|\bquarter\s+[1-4]\b|\b[1-4](?:st|nd|rd|th)\s+quarter\b"
)


def extract_date_range(query: str, today: Optional[date] = None) -> Dict[str, str]:
    """Best-effort date range for a whole question; defaults to the last 30 days."""
    today = today or date.today()
    lower = (query or "").lower()
    ctx = date_context(today)

    if re.search(r"\bfrom\b.+\b(to|until|through)\b", lower):
        resolved = parse_from_to_range(lower, today)
        if resolved:
            return resolved

    isos = [d for d in (_valid_iso(m.group(0)) for m in _ISO_DATE_RE.finditer(lower)) if d]
    if len(isos) >= 2:
        return _range(min(isos[:2]), max(isos[:2]))
    if len(isos) == 1:
        return _range(isos[0], isos[0])

    if "last week" in lower or "past week" in lower:
        return {"start": ctx["last_week_start"], "end": ctx["last_week_end"]}
    if "this week" in lower:
        return {"start": ctx["this_week_start"], "end": ctx["today"]}
    if "last month" in lower or "past month" in lower:
        return {"start": ctx["last_month_start"], "end": ctx["last_month_end"]}
    if "yesterday" in lower:
        return {"start": ctx["yesterday"], "end": ctx["yesterday"]}
    if "today" in lower:
        return {"start": ctx["today"], "end": ctx["today"]}
    if "last 7 days" in lower or "past 7 days" in lower:
        return {"start": ctx["last_7_days"], "end": ctx["today"]}
    if "last 30 days" in lower or "past 30 days" in lower:
        return {"start": ctx["last_30_days"], "end": ctx["today"]}

    m = _RELATIVE_RE.search(lower)
    if m:
        return parse_relative_date(m.group(0), today)

    month = _find_month(lower)
    if month:
        return _month_range(month[0], today, month[1])

    return default_range(today)
