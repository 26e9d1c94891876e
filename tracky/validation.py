"""
tracky/validation.py

Input normalization for entity fields and ledger positions.

Everything here runs before any write and raises InvalidArgument on bad input.
Normalized values are what gets stored (and staged in proposedChanges).
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Dict, Tuple

try:
    from tracky.errors import InvalidArgument
    from tracky.models import RESERVED_FIELDS, EntityKind
    from tracky.valuation import format_date, parse_amount, parse_date, parse_rate
except ModuleNotFoundError:
    from errors import InvalidArgument
    from models import RESERVED_FIELDS, EntityKind
    from valuation import format_date, parse_amount, parse_date, parse_rate


ENTITY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
EXTRA_FIELD_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

# Fields maintained by the workflow, the store, the media coordinator or the ledger
PROTECTED_FIELDS = RESERVED_FIELDS | frozenset({
    "createdBy",
    "currentPrice",
    "approvalState",
    "approved",
    "approvedBy",
    "approvedAt",
    "editRequested",
    "editRequestedBy",
    "editRequestedAt",
    "proposedChanges",
    "editApproved",
    "editApprovedBy",
    "editApprovedAt",
    "imageURL",
    "qrCode",
    "assetId",
    "locationHistory",
    "latitude",
    "longitude",
    "timestamp",
})


def validate_entity_id(value: Any, field: str = "id") -> str:
    text = str(value).strip() if value is not None else ""
    if not ENTITY_ID_PATTERN.match(text):
        raise InvalidArgument(f"{field} must be 1-64 letters, digits, '-' or '_'")
    return text


def _name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument("name must be a non-empty string")
    return value.strip()


def _optional_text(field: str) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise InvalidArgument(f"{field} must be a string")
        return value.strip()
    return check


def _optional_reference(field: str) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if value is None or value == "":
            return None
        return validate_entity_id(value, field)
    return check


def _flag(field: str) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise InvalidArgument(f"{field} must be a boolean")
    return check


ASSET_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": _name,
    "description": _optional_text("description"),
    "originalPrice": lambda v: parse_amount(v, "originalPrice"),
    "depreciationRate": lambda v: parse_rate(v).value,
    "depreciationValue": lambda v: parse_amount(v, "depreciationValue"),
    "purchaseDate": lambda v: format_date(parse_date(v)),
    "trackerId": _optional_reference("trackerId"),
}

TRACKER_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "name": _name,
    "description": _optional_text("description"),
    "vehicleType": _optional_text("vehicleType"),
    "plateNumber": _optional_text("plateNumber"),
    "mobile": _flag("mobile"),
}

FIELD_RULES = {
    EntityKind.asset: ASSET_FIELDS,
    EntityKind.tracker: TRACKER_FIELDS,
}

REQUIRED_ON_CREATE = {
    EntityKind.asset: ("name",),
    EntityKind.tracker: (),
}


def _extra_value(field: str, value: Any) -> Any:
    if not EXTRA_FIELD_PATTERN.match(field):
        raise InvalidArgument(f"Invalid field name: {field!r}")
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return value
    raise InvalidArgument(f"{field} must be a string, number or boolean")


def normalize_fields(kind: EntityKind, fields: Dict[str, Any], creating: bool = False) -> Dict[str, Any]:
    """
    Validate and normalize caller-supplied fields for an entity.

    Known fields are type-checked and normalized; other scalar attributes
    (e.g. serialNumber) pass through. Governance, media, valuation-derived and
    ledger fields are refused outright.

    Raises:
        InvalidArgument: On any protected, malformed or missing required field.
    """
    if not isinstance(fields, dict):
        raise InvalidArgument("Fields must be an object")

    protected = sorted(set(fields) & PROTECTED_FIELDS)
    if protected:
        raise InvalidArgument(f"Fields cannot be set directly: {', '.join(protected)}")

    rules = FIELD_RULES[kind]
    normalized: Dict[str, Any] = {}
    for field, value in fields.items():
        rule = rules.get(field)
        if rule is None:
            normalized[field] = _extra_value(field, value)
        elif value is None and field in ("name", "originalPrice", "depreciationRate",
                                         "depreciationValue", "purchaseDate", "mobile"):
            raise InvalidArgument(f"{field} cannot be cleared")
        else:
            normalized[field] = rule(value)

    if creating:
        missing = [f for f in REQUIRED_ON_CREATE[kind] if f not in normalized]
        if missing:
            raise InvalidArgument(f"Missing required field(s): {', '.join(missing)}")

    return normalized


def parse_timestamp(value: Any) -> int:
    """Ledger key: epoch milliseconds (int, digit string or ISO-8601 string)."""
    if isinstance(value, bool):
        raise InvalidArgument("timestamp must be epoch milliseconds or an ISO-8601 date")
    if isinstance(value, int):
        stamp = value
    elif isinstance(value, float) and math.isfinite(value) and value.is_integer():
        stamp = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        stamp = int(value.strip())
    elif isinstance(value, str):
        try:
            stamp = int(parse_date(value).timestamp() * 1000)
        except InvalidArgument:
            raise InvalidArgument(f"timestamp is not epoch milliseconds or an ISO-8601 date: {value!r}")
    else:
        raise InvalidArgument("timestamp must be epoch milliseconds or an ISO-8601 date")
    if stamp < 0:
        raise InvalidArgument("timestamp must not be negative")
    return stamp


def _coordinate(value: Any, field: str, bound: float) -> float:
    if isinstance(value, bool):
        raise InvalidArgument(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{field} must be a number")
    if not math.isfinite(number) or abs(number) > bound:
        raise InvalidArgument(f"{field} must be between -{bound:g} and {bound:g}")
    return number


def parse_position(timestamp: Any, longitude: Any, latitude: Any) -> Tuple[int, float, float]:
    """Validate one ledger entry. All three parts are required."""
    missing = [
        name for name, value in (("timestamp", timestamp), ("longitude", longitude), ("latitude", latitude))
        if value is None or value == ""
    ]
    if missing:
        raise InvalidArgument(f"Missing required field(s): {', '.join(missing)}")
    return (
        parse_timestamp(timestamp),
        _coordinate(longitude, "longitude", 180.0),
        _coordinate(latitude, "latitude", 90.0),
    )
