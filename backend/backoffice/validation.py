from __future__ import annotations

from datetime import date
from typing import Any

from .errors import ValidationError
from .time_utils import parse_business_date

MAX_PAGE_SIZE = 100


def require_json(payload: Any) -> dict:
    """Request bodies must be JSON objects."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def parse_id(value: Any, field: str, *, required: bool = True) -> int | None:
    """
    Strict integer id: rejects floats, booleans, decimals and scientific
    notation ("1e3").
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")
    if result <= 0:
        raise ValidationError(f"{field} must be a positive id")
    return result


def parse_date(value: Any, field: str, *, required: bool = True, default: date | None = None) -> date | None:
    """Business date from "YYYY-MM-DD" (or an ISO datetime)."""
    try:
        parsed = parse_business_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")
    if parsed is None:
        if default is not None:
            return default
        if required:
            raise ValidationError(f"{field} is required")
    return parsed


def parse_pagination(args) -> tuple[int, int]:
    try:
        page = int(args.get("page", 1))
        limit = int(args.get("limit", 20))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return page, limit
