"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in docledger/__init__.py with no default
limits; this module applies limits per blueprint after registration.

Usage:
    from docledger.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

_LEDGER_BLUEPRINTS = ("artifact_bp", "change_request_bp", "project_bp", "approval_bp")


def init_rate_limits(app, limiter):
    """
    Apply API_RATE_LIMIT to the ledger blueprints; exempt health checks.

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    limit = app.config.get("API_RATE_LIMIT", "300 per minute")
    for bp_name in _LEDGER_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: ledger API %s", limit)
