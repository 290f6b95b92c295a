"""Shared request-parsing helpers for blueprints.

All parsers follow the tuple-return pattern used by the views:

    ids, err = parse_id_list(data.get("report_ids"), "report_ids")
    if err:
        return err

NOTE: abort(400) is not used: the existing pattern is tuple-return.
"""
import logging

from flask import request

from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "system"


def get_actor():
    """Acting principal for audit entries: ``X-Actor`` header, else "system"."""
    actor = (request.headers.get("X-Actor") or "").strip()
    return actor[:150] or DEFAULT_ACTOR


def parse_id_list(value, field):
    """Validate a JSON list of integer ids.

    - Success: (list[int], None)
    - Failure: (None, (jsonify_response, 400))
    """
    if value is None:
        return None, api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    if not isinstance(value, list) or not value:
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be a non-empty list")
    ids = []
    for item in value:
        # bool is an int subclass; reject it explicitly
        if isinstance(item, bool) or not isinstance(item, int):
            return None, api_error(
                E.VALIDATION_INVALID, f"{field} must contain integer ids", details={"value": item},
            )
        ids.append(item)
    return ids, None


def require_fields(data, *fields):
    """Return (values_dict, None) or (None, 400 error) if any string field is blank."""
    missing = [f for f in fields if not str(data.get(f) or "").strip()]
    if missing:
        return None, api_error(
            E.VALIDATION_REQUIRED,
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    return {f: str(data[f]).strip() for f in fields}, None


def parse_optional_int(value, field, default=None):
    """Parse an optional integer; returns (int | default, None) or (None, 400 error)."""
    if value is None or value == "":
        return default, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        logger.debug("Rejected non-integer %s=%r", field, value)
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")
