"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)


def _organization_key():
    """Scan limit key: one bucket per organization, not per caller."""
    view_args = flask_request.view_args or {}
    org_id = view_args.get("org_id")
    if org_id is not None:
        return f"org:{org_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Deployment endpoints:  60/minute per remote IP
        - Workspace scan:        SCAN_RATE_LIMIT per organization
                                 (each scan fans out to the BI service)
        - Health check:          exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("deployment_bp")
    if bp:
        limiter.limit("60/minute")(bp)

    scan_view = app.view_functions.get("deployment_bp.scan_workspace")
    scan_limit = app.config.get("SCAN_RATE_LIMIT", "10 per minute")
    if scan_view is not None:
        limiter.limit(scan_limit, key_func=_organization_key)(scan_view)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: deployment: 60/min, scan: %s per org", scan_limit)
