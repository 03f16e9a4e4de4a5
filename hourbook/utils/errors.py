"""Standardised API error responses.

Usage
-----
    from hourbook.utils.errors import api_error, E

    return api_error(E.VALIDATION_REQUIRED, "phaseAllocationId is required")
    return api_error(E.VALIDATION_INVALID, "weekStartDate must be YYYY-MM-DD")

Engine exceptions raised by services never reach ``api_error`` directly;
``register_error_handlers`` renders them with their own code and context.
"""

from __future__ import annotations

import logging

from flask import jsonify

from hourbook.core.exceptions import EngineError

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable codes for errors raised in blueprints."""

    # Malformed input – HTTP 400
    VALIDATION_REQUIRED = "MissingField"
    VALIDATION_INVALID = "InvalidInput"

    NOT_FOUND = "NotFound"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    UNSUPPORTED_MEDIA = "UnsupportedMediaType"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    RATE_LIMITED = "RateLimited"

    DATABASE = "DatabaseError"
    INTERNAL = "InternalError"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.UNSUPPORTED_MEDIA: 415,
    E.PAYLOAD_TOO_LARGE: 413,
    E.RATE_LIMITED: 429,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override. Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra fields merged into the body.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)``, a drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {"error": code, "message": message}
    if details:
        body.update(details)

    return jsonify(body), http_status


def register_error_handlers(bp):
    """Attach the engine exception handler to a blueprint."""

    @bp.errorhandler(EngineError)
    def _handle_engine_error(exc):
        if exc.http_status >= 500:
            logger.error("Engine consistency failure: %s", exc, extra={"event_type": exc.code})
        return jsonify(exc.to_dict()), exc.http_status
