"""
DocLedger
Blueprint registry and shared request helpers.
"""

from flask import request

from docledger.core.exceptions import ValidationError
from docledger.services.role_gate import Actor


def pagination_args(default_limit=100, max_limit=500):
    """Read limit/offset pagination from the query string.

    Query params:
        limit  — max items (default 100, between 1 and max_limit)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = max(1, min(int(request.args.get("limit", default_limit)), max_limit))
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def current_actor() -> Actor:
    """Build the acting identity from the request.

    Authentication happens upstream; the gateway forwards the resolved
    identity as ``X-User-Id`` / ``X-User-Email``.
    """
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise ValidationError("X-User-Id header is required", details={"X-User-Id": "missing"})
    email = (request.headers.get("X-User-Email") or "").strip() or None
    return Actor(user_id=user_id, email=email)


def json_body() -> dict:
    """Return the JSON body as a dict (empty dict when absent)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
