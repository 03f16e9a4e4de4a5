"""
Hour Change Request Blueprint.

Endpoints:
    POST /api/v1/hour-change-requests           raise an ADJUSTMENT or SHIFT request
    GET  /api/v1/hour-change-requests           list (status, phaseAllocationId)
    GET  /api/v1/hour-change-requests/<id>
    POST /api/v1/hour-change-requests/<id>      approve | reject
"""

from flask import Blueprint, jsonify, request

from hourbook.services import hour_change_service as svc
from hourbook.utils.errors import E, api_error, register_error_handlers
from hourbook.utils.helpers import current_user, parse_date, parse_hours

hour_change_bp = Blueprint("hour_change", __name__, url_prefix="/api/v1/hour-change-requests")
register_error_handlers(hour_change_bp)


@hour_change_bp.route("", methods=["POST"])
def create():
    data = request.get_json(silent=True) or {}
    alloc_id = data.get("phaseAllocationId")
    if not alloc_id:
        return api_error(E.VALIDATION_REQUIRED, "phaseAllocationId is required")
    if not data.get("changeType"):
        return api_error(E.VALIDATION_REQUIRED, "changeType is required")
    hours = parse_hours(data.get("requestedHours"))
    if hours is None:
        return api_error(E.VALIDATION_INVALID, "requestedHours must be a number")

    from_week, to_week = data.get("fromWeekStartDate"), data.get("toWeekStartDate")
    from_date, to_date = parse_date(from_week), parse_date(to_week)
    if (from_week and from_date is None) or (to_week and to_date is None):
        return api_error(E.VALIDATION_INVALID, "week dates must be ISO dates (YYYY-MM-DD)")

    req = svc.create_request(
        alloc_id,
        data.get("requesterId") or None,
        data["changeType"],
        hours,
        data.get("reason"),
        from_week_start=from_date,
        to_week_start=to_date,
    )
    return jsonify({"ok": True, "request": req.to_dict()}), 201


@hour_change_bp.route("", methods=["GET"])
def list_requests():
    items = svc.list_requests(
        status=request.args.get("status"),
        phase_allocation_id=request.args.get("phaseAllocationId"),
    )
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})


@hour_change_bp.route("/<request_id>", methods=["GET"])
def get(request_id):
    return jsonify(svc.get_request(request_id).to_dict())


@hour_change_bp.route("/<request_id>", methods=["POST"])
def decide(request_id):
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if action == "approve":
        req = svc.approve_request(request_id, current_user())
    elif action == "reject":
        req = svc.reject_request(request_id, data.get("rejectionReason"), current_user())
    else:
        return api_error(E.VALIDATION_INVALID, "action must be approve or reject")
    return jsonify({"ok": True, "request": req.to_dict()})
