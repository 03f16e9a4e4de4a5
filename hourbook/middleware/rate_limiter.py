"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in hourbook/__init__.py with no default limits; this module
applies granular limits per blueprint.

Usage:
    from hourbook.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Limits (per remote IP):
        - Weekly approvals (incl. batch):  BATCH_APPROVAL_RATE_LIMIT
        - Phase allocations, hour changes: WRITE_RATE_LIMIT
        - Capacity reads:                  unlimited
        - Health check:                    exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    approval_limit = app.config.get("BATCH_APPROVAL_RATE_LIMIT", "30 per minute")
    write_limit = app.config.get("WRITE_RATE_LIMIT", "120 per minute")

    bp = app.blueprints.get("weekly_allocation")
    if bp:
        limiter.limit(approval_limit, methods=["POST"])(bp)

    for bp_name in ("phase_allocation", "hour_change"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, methods=["POST"])(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: weekly approvals %s, writes %s",
        approval_limit, write_limit,
    )
