from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from bson import ObjectId


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def serialize_doc(doc: Any) -> Any:
    """Recursively convert MongoDB docs into JSON-serializable structures."""
    if doc is None:
        return None

    if isinstance(doc, ObjectId):
        return str(doc)

    if isinstance(doc, (datetime, date)):
        return doc.isoformat()

    if isinstance(doc, list):
        return [serialize_doc(x) for x in doc]

    if isinstance(doc, dict):
        out: dict[str, Any] = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out

    return doc


def night_dates(check_in: date, check_out: date) -> list[str]:
    """Inclusive check-in, exclusive check-out (accommodation nights)."""
    out: list[str] = []
    cur = check_in
    while cur < check_out:
        out.append(cur.isoformat())
        cur += timedelta(days=1)
    return out


def parse_iso_date(value: Any) -> date:
    """Parse YYYY-MM-DD (or an ISO datetime prefix) into a date.

    Raises ValueError/TypeError on anything else so callers can treat the
    payload as malformed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise TypeError(f"expected ISO date string, got {type(value).__name__}")
    return date.fromisoformat(value.strip()[:10])


def mask_credentials(creds: Any) -> dict:
    if not creds or not isinstance(creds, dict):
        return {}
    masked: dict[str, Any] = {}
    for k, v in creds.items():
        if v is None or v == "":
            masked[k] = v
        elif isinstance(v, str):
            masked[k] = "****"
        else:
            masked[k] = v
    return masked
