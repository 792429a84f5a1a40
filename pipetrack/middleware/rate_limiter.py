"""
Per-blueprint rate limits (Flask-Limiter).

The Limiter instance is created in pipetrack/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from pipetrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

WRITE_BLUEPRINTS = ("import_bp", "milestone_bp", "review_bp")
READ_BLUEPRINTS = ("project_bp",)


def init_rate_limits(app, limiter):
    """
    Limits (per remote IP):
        - Imports, milestone writes, review decisions:  60/minute
        - Project / drawing / rollup reads:             200/minute
        - Health checks:                                exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: write %s, read %s", WRITE_LIMIT, READ_LIMIT)
