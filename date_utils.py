"""
Date and Time Utilities for the F-system portal
Provides standardized formatting in Sudan local time (CAT/GMT+2) plus
parsing helpers for the loosely formatted dates found in submitted reports
"""
import re
from datetime import date, datetime, timezone, timedelta


# Central Africa Time (CAT) is UTC+2
CAT = timezone(timedelta(hours=2))

REPORT_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d")


def utc_to_cat(dt):
    """
    Convert UTC datetime to Central Africa Time

    Args:
        dt: datetime object in UTC (naive or aware)

    Returns:
        datetime object in CAT timezone
    """
    if dt is None:
        return None

    # Naive datetimes are stored as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(CAT)


def format_date(dt):
    """
    Format date as YYYY-MM-DD

    Args:
        dt: datetime or date object

    Returns:
        str: Formatted date (e.g., "2025-11-10"), empty string for None
    """
    if dt is None:
        return ""

    if isinstance(dt, datetime):
        dt = utc_to_cat(dt)

    return dt.strftime("%Y-%m-%d")


def format_datetime_iso(dt):
    """ISO 8601 string in CAT for JSON payloads; None stays None"""
    if dt is None:
        return None
    return utc_to_cat(dt).isoformat()


def parse_date(value):
    """Parse a YYYY-MM-DD string (or pass a date through); blank input gives None"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def clean_report_date(value):
    """
    Normalize a date typed into a paper report

    Three-digit years lost a digit: "202" reads as 2020, "024" as 2024.

    Args:
        value: raw date string

    Returns:
        str: ISO date (YYYY-MM-DD) or None when the value cannot be read
    """
    if not value or not isinstance(value, str):
        return None

    cleaned = value.strip()
    match = re.match(r"^(\d{1,2})/(\d{1,2})/(\d{3})$", cleaned)
    if match:
        year = match.group(3)
        year = year + "0" if year.startswith("20") else "2" + year
        cleaned = f"{match.group(1)}/{match.group(2)}/{year}"

    for fmt in REPORT_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue
    return None
