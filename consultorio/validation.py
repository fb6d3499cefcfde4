"""
Validation utilities for the Consultorio booking engine

Contains helpers for name validation, menu parsing and business-day dates.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from consultorio.models import (
    NAME_PATTERN, TIME_PATTERN, DATE_PATTERN, SOCIAL_WORKS, CANCEL_KEYWORD,
)


# ============================================================================
# Validation Functions
# ============================================================================

def normalize_name(name: str) -> str:
    """Collapse whitespace and title-case each word"""
    words = name.split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def validate_name(name: str) -> Tuple[bool, str]:
    """
    Validate a patient's full name.

    Requires at least two whitespace-separated alphabetic words of two or
    more letters each. Accented letters are allowed; digits and symbols are not.

    Args:
        name: Raw text typed by the user

    Returns:
        Tuple of (is_valid, error_message)
    """
    cleaned = " ".join(name.split()) if name else ""

    if len(cleaned) < 4:
        return False, "❌ El nombre es demasiado corto. Por favor, ingresa tu nombre completo."

    if not NAME_PATTERN.match(cleaned):
        return False, "❌ El nombre solo debe contener letras (sin números ni caracteres especiales)."

    words = cleaned.split(" ")
    if len(words) < 2:
        return False, "❌ Por favor, ingresa tanto tu nombre como tu apellido separados por un espacio."

    if any(len(word) < 2 for word in words):
        return False, "❌ Cada parte del nombre debe tener al menos 2 letras."

    return True, ""


def parse_social_work(choice: str) -> Optional[str]:
    """Map a numeric menu choice to a plan name, None when unmapped"""
    if not choice:
        return None
    return SOCIAL_WORKS.get(choice.strip())


def parse_selection(user_input: str, list_length: int) -> Optional[int]:
    """
    Parse a 1-based list position.

    Returns:
        The position, or None when the input is not an integer in [1, list_length]
    """
    cleaned = (user_input or "").strip()
    if not cleaned.isdigit():
        return None
    position = int(cleaned)
    if 1 <= position <= list_length:
        return position
    return None


def is_cancel(user_input: str) -> bool:
    return (user_input or "").strip().lower() == CANCEL_KEYWORD


def validate_time(value: str) -> bool:
    return bool(value) and bool(TIME_PATTERN.match(value))


def validate_date(value: str) -> bool:
    if not value or not DATE_PATTERN.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


# ============================================================================
# Date Helpers
# ============================================================================

def parse_hhmm(value: str) -> Tuple[int, int]:
    hour, _, minute = value.partition(":")
    return int(hour), int(minute)


def next_business_day(day: date) -> date:
    """The given day, or the following Monday when it falls on a weekend"""
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def appointment_date_for(now: datetime, cutoff: str) -> date:
    """
    Date offered for regular appointments.

    After the cutoff (local time) the offer rolls over to the next day, then
    weekends are skipped.
    """
    cutoff_hour, cutoff_minute = parse_hhmm(cutoff)
    day = now.date()
    if (now.hour, now.minute) >= (cutoff_hour, cutoff_minute):
        day += timedelta(days=1)
    return next_business_day(day)


def sobreturno_date_for(now: datetime) -> date:
    """Overflow slots are same-day; weekends move to the next business day"""
    return next_business_day(now.date())


def is_time_past(date_str: str, time_str: str, now: datetime) -> bool:
    """True when date_str is today and time_str is not after the current local time"""
    if date_str != now.strftime("%Y-%m-%d"):
        return False
    hour, minute = parse_hhmm(time_str)
    return (hour, minute) <= (now.hour, now.minute)
