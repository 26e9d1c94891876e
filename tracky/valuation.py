"""
tracky/valuation.py

Straight-line depreciation for assets.

    currentPrice = max(0, originalPrice - originalPrice * (depreciationValue / 100) * periods)

where `periods` is the elapsed time since purchase, rounded up to whole days and
expressed in the depreciation period (1, 7, 30 or 365 days). No decay happens
while no time has elapsed. The clock is always passed in.

Pure Python logic - no I/O, no side effects.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Any, Union

try:
    from tracky.errors import InvalidArgument
    from tracky.models import DepreciationRate
except ModuleNotFoundError:
    from errors import InvalidArgument
    from models import DepreciationRate

# Fields whose change forces a recomputation of currentPrice
VALUATION_FIELDS = ("originalPrice", "depreciationRate", "depreciationValue", "purchaseDate")

DEFAULT_DEPRECIATION_RATE = DepreciationRate.daily

SECONDS_PER_DAY = 86400
PRICE_DECIMALS = 2

DateLike = Union[datetime, date, str]


def parse_amount(value: Any, field: str) -> float:
    """Coerce a price/percentage to a non-negative finite float (numeric strings allowed)."""
    if isinstance(value, bool) or value is None:
        raise InvalidArgument(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{field} must be a number")
    if not math.isfinite(number):
        raise InvalidArgument(f"{field} must be finite")
    if number < 0:
        raise InvalidArgument(f"{field} must not be negative")
    return number


def parse_rate(value: Any) -> DepreciationRate:
    if isinstance(value, DepreciationRate):
        return value
    try:
        return DepreciationRate(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(r.value for r in DepreciationRate)
        raise InvalidArgument(f"depreciationRate must be one of: {allowed}")


def parse_date(value: Any) -> datetime:
    """Parse a purchase date into an aware UTC datetime. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidArgument(f"purchaseDate is not an ISO-8601 date: {value!r}")
    else:
        raise InvalidArgument("purchaseDate must be an ISO-8601 date")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def elapsed_periods(purchase_date: datetime, now: datetime, rate: DepreciationRate) -> float:
    """
    Whole elapsed days (rounded up) expressed in depreciation periods.

    Purchase dates at or after `now` count as zero elapsed time.
    """
    seconds = (now - purchase_date).total_seconds()
    if seconds <= 0:
        return 0.0
    days = math.ceil(seconds / SECONDS_PER_DAY)
    return days / rate.period_days


def current_price(
    original_price: Any,
    depreciation_rate: Any,
    depreciation_value: Any,
    purchase_date: DateLike,
    now: datetime,
) -> float:
    """
    Compute the current value of an asset.

    Args:
        original_price: Purchase price (>= 0)
        depreciation_rate: daily / weekly / monthly / yearly
        depreciation_value: Percent of the original price lost per period (>= 0)
        purchase_date: When the asset was bought (datetime, date or ISO string)
        now: Valuation instant

    Returns:
        Value in [0, original_price], rounded to cents.

    Raises:
        InvalidArgument: On a negative, non-numeric or non-finite amount, an
            unknown rate or an unparseable date.
    """
    price = parse_amount(original_price, "originalPrice")
    percent = parse_amount(depreciation_value, "depreciationValue")
    rate = parse_rate(depreciation_rate)
    purchased = parse_date(purchase_date)
    valued_at = parse_date(now)

    periods = elapsed_periods(purchased, valued_at, rate)
    if periods == 0:
        return price

    value = price - price * (percent / 100) * periods
    return round(max(value, 0.0), PRICE_DECIMALS)


def price_for_document(doc: dict, now: datetime) -> float:
    """Value an asset document, filling unset valuation fields with their defaults."""
    return current_price(
        doc.get("originalPrice", 0),
        doc.get("depreciationRate", DEFAULT_DEPRECIATION_RATE),
        doc.get("depreciationValue", 0),
        doc.get("purchaseDate") or now,
        now,
    )
