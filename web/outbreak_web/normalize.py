"""
Field derivations shared by every endpoint.

All helpers are pure: they never mutate their arguments, so normalizing the
same raw payload twice yields identical output.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional, Tuple


DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
BUILD_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
PROPORTION_FLOOR = 0.005
BELOW_FLOOR = "< 0.5%"
NOT_DETECTED = "not detected"
DESCRIPTION_WORDS = 75
LOWERCASE_TOKENS = {"of"}


def parse_date(value: Any) -> Optional[date]:
    """Parse a strict ``YYYY-MM-DD`` string; anything else yields None."""

    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_build_date(value: Any) -> Optional[datetime]:
    """Parse a backend build timestamp such as ``2021-03-04T07:21:32.123456-07:00``."""

    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, BUILD_DATE_FORMAT)
    except ValueError:
        return None


def parse_utc_timestamp(value: Any) -> Optional[datetime]:
    """Parse a zone-less ``%Y-%m-%dT%H:%M:%S.%f`` timestamp as UTC."""

    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def format_date(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.day} {value:%B %Y}"


def format_date_short(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return f"{value.day} {value:%b %Y}"


def format_day_month_year(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:%d %B %Y}"


def capitalize(value: Any) -> str:
    if not value:
        return ""
    value = str(value)
    if value in LOWERCASE_TOKENS:
        return value
    return value[:1].upper() + value[1:]


def title_case(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return " ".join(capitalize(token) for token in value.split(" "))


def format_percent(value: float) -> str:
    return f"{value:.0%}"


def format_proportion(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    if value < PROPORTION_FLOOR:
        return BELOW_FLOOR
    return format_percent(value)


def format_cum_proportion(value: Optional[float], lineage_count: Any) -> Optional[str]:
    """Cumulative prevalence label; a zero lineage count reads "not detected"."""

    if not lineage_count:
        return NOT_DETECTED
    return format_proportion(value)


def format_count(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, (int, float)):
        return None
    return f"{value:,}"


def display_name(
    name: Optional[str],
    state_name: Optional[str] = None,
    country_name: Optional[str] = None,
) -> Optional[str]:
    if state_name:
        return f"{name}, {state_name}"
    if country_name and country_name != name:
        return f"{name}, {country_name}"
    return name


def is_new_today(value: Optional[date], today: Optional[date] = None) -> bool:
    """Whole-day gap between ``value`` and today is strictly less than two."""

    if value is None:
        return False
    today = today or date.today()
    return (today - value).days < 2


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def last_updated(updated: Optional[datetime], now: Optional[datetime] = None) -> Optional[str]:
    """Age of a build as "Nm" below an hour, "Nh" up to a day, else "Nd"."""

    if updated is None:
        return None
    now = now or datetime.now(timezone.utc)
    hours = (now - updated).total_seconds() / 3600
    if hours < 1:
        return f"{_round_half_up(hours * 60)}m"
    if hours <= 24:
        return f"{_round_half_up(hours)}h"
    return f"{_round_half_up(hours / 24)}d"


def resource_date(record: Mapping[str, Any]) -> Optional[str]:
    return record.get("dateModified") or record.get("datePublished") or record.get("dateCreated")


def summarize_description(text: Optional[str], max_words: int = DESCRIPTION_WORDS) -> Tuple[Optional[str], bool]:
    if not text:
        return None, False
    words = text.split(" ")
    return " ".join(words[:max_words]), len(words) >= max_words


def location_key(name: str, worldwide: bool) -> str:
    # Georgia the state and Georgia the country must not collide.
    compact = re.sub(r"\s", "", name or "")
    return f"country_{compact}" if worldwide else compact


def to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


__all__ = [
    "parse_date",
    "parse_build_date",
    "parse_utc_timestamp",
    "format_date",
    "format_date_short",
    "format_day_month_year",
    "capitalize",
    "title_case",
    "format_percent",
    "format_proportion",
    "format_cum_proportion",
    "format_count",
    "display_name",
    "is_new_today",
    "last_updated",
    "resource_date",
    "summarize_description",
    "location_key",
    "to_number",
]
