"""
Capacity Blueprint: read-only availability projections.

Endpoints:
    GET /api/v1/consultants/availability             per-consultant summary over a window
    GET /api/v1/consultants/<id>/weekly-breakdown    one consultant, one row per week
    GET /api/v1/capacity/summary                     fleet tier counts and utilization
"""

from datetime import date, timedelta

from flask import Blueprint, jsonify, request

from hourbook.services import capacity_projector as projector
from hourbook.utils.errors import E, api_error, register_error_handlers
from hourbook.utils.helpers import parse_date

capacity_bp = Blueprint("capacity", __name__, url_prefix="/api/v1")
register_error_handlers(capacity_bp)

DEFAULT_WINDOW_WEEKS = 8


def _window_args():
    """Return (start, end) or an api_error tuple when a date is unparsable."""
    raw_start = request.args.get("startDate")
    raw_end = request.args.get("endDate")
    start = parse_date(raw_start)
    end = parse_date(raw_end)
    if (raw_start and start is None) or (raw_end and end is None):
        return None, api_error(E.VALIDATION_INVALID, "startDate and endDate must be ISO dates (YYYY-MM-DD)")
    start = start or date.today()
    end = end or start + timedelta(weeks=DEFAULT_WINDOW_WEEKS) - timedelta(days=1)
    return (start, end), None


@capacity_bp.route("/consultants/availability", methods=["GET"])
def availability():
    window, error = _window_args()
    if error:
        return error
    scale = projector.get_scale(request.args.get("scale"), projector.DETAIL)
    consultants = projector.consultant_availability(
        window[0], window[1],
        scale=scale,
        exclude_project_id=request.args.get("excludeProjectId"),
    )
    return jsonify({
        "consultants": consultants,
        "scale": scale.name,
        "startDate": window[0].isoformat(),
        "endDate": window[1].isoformat(),
    })


@capacity_bp.route("/consultants/<consultant_id>/weekly-breakdown", methods=["GET"])
def consultant_breakdown(consultant_id):
    window, error = _window_args()
    if error:
        return error
    scale = projector.get_scale(request.args.get("scale"), projector.DETAIL)
    summary = projector.consultant_availability(
        window[0], window[1],
        scale=scale,
        exclude_project_id=request.args.get("excludeProjectId"),
        consultant_id=consultant_id,
    )[0]
    return jsonify(summary)


@capacity_bp.route("/capacity/summary", methods=["GET"])
def summary():
    window, error = _window_args()
    if error:
        return error
    scale = projector.get_scale(request.args.get("scale"), projector.FLEET)
    return jsonify(projector.fleet_summary(window[0], window[1], scale=scale))
