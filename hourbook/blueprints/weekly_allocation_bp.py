"""
Weekly Allocation Blueprint.

Endpoints:
  Consultant:  POST /weekly-allocations                submit one week
               POST /weekly-allocations/plan           submit several weeks as one batch
               GET  /weekly-allocations                list (consultantId, startDate, endDate, status)
  Approver:    GET  /weekly-allocations/pending        approval queue (grouped=true for submissions)
               POST /weekly-allocations/<id>           approve | reject | modify
               POST /weekly-allocations/batch          many decisions, per-item isolation
"""

from flask import Blueprint, jsonify, request

from hourbook.services import allocation_ledger as ledger
from hourbook.services import approval_state_machine as asm
from hourbook.services import batch_approval
from hourbook.utils.errors import E, api_error, register_error_handlers
from hourbook.utils.helpers import current_user, parse_date, parse_hours, truthy

weekly_allocation_bp = Blueprint(
    "weekly_allocation", __name__, url_prefix="/api/v1/weekly-allocations",
)
register_error_handlers(weekly_allocation_bp)


# ═════════════════════════════════════════════════════════════════════════════
# Consultant submissions
# ═════════════════════════════════════════════════════════════════════════════


@weekly_allocation_bp.route("", methods=["POST"])
def submit_week():
    """Upsert one week of planned hours against an approved phase allocation."""
    data = request.get_json(silent=True) or {}
    alloc_id = data.get("phaseAllocationId")
    if not alloc_id:
        return api_error(E.VALIDATION_REQUIRED, "phaseAllocationId is required")
    week_date = parse_date(data.get("weekStartDate"))
    if week_date is None:
        return api_error(E.VALIDATION_INVALID, "weekStartDate must be an ISO date (YYYY-MM-DD)")
    hours = parse_hours(data.get("plannedHours"))
    if hours is None:
        return api_error(E.VALIDATION_INVALID, "plannedHours must be a number")

    week = ledger.submit_weekly_hours(
        alloc_id,
        week_date,
        hours,
        clear_rejection=truthy(data.get("clearRejection", False)),
        consultant_description=data.get("consultantDescription"),
    )
    return jsonify({"ok": True, "allocation": week.to_dict()})


@weekly_allocation_bp.route("/plan", methods=["POST"])
def submit_plan():
    """Write several weeks in one transaction under a fresh submissionBatchId."""
    data = request.get_json(silent=True) or {}
    alloc_id = data.get("phaseAllocationId")
    if not alloc_id:
        return api_error(E.VALIDATION_REQUIRED, "phaseAllocationId is required")
    raw_weeks = data.get("weeks")
    if not isinstance(raw_weeks, list) or not raw_weeks:
        return api_error(E.VALIDATION_REQUIRED, "weeks must be a non-empty list")

    weeks = []
    for idx, item in enumerate(raw_weeks):
        item = item if isinstance(item, dict) else {}
        week_date = parse_date(item.get("weekStartDate"))
        hours = parse_hours(item.get("plannedHours"))
        if week_date is None or hours is None:
            return api_error(
                E.VALIDATION_INVALID,
                f"weeks[{idx}] needs weekStartDate (YYYY-MM-DD) and numeric plannedHours",
            )
        weeks.append({
            "week_start_date": week_date,
            "hours": hours,
            "description": item.get("consultantDescription"),
        })

    batch_id, written = ledger.submit_weekly_plan(
        alloc_id, weeks, clear_rejection=truthy(data.get("clearRejection", False)),
    )
    return jsonify({
        "ok": True,
        "submissionBatchId": batch_id,
        "allocations": [w.to_dict() for w in written],
    })


@weekly_allocation_bp.route("", methods=["GET"])
def list_weeks():
    start = request.args.get("startDate")
    end = request.args.get("endDate")
    start_date, end_date = parse_date(start), parse_date(end)
    if (start and start_date is None) or (end and end_date is None):
        return api_error(E.VALIDATION_INVALID, "startDate and endDate must be ISO dates")

    items = ledger.list_weekly_allocations(
        consultant_id=request.args.get("consultantId"),
        start_date=start_date,
        end_date=end_date,
        status=request.args.get("status"),
    )
    return jsonify({"items": [w.to_dict() for w in items], "total": len(items)})


# ═════════════════════════════════════════════════════════════════════════════
# Approver decisions
# ═════════════════════════════════════════════════════════════════════════════


@weekly_allocation_bp.route("/pending", methods=["GET"])
def pending_queue():
    weeks = batch_approval.pending_weekly_allocations()
    if truthy(request.args.get("grouped", "false")):
        submissions = batch_approval.group_submissions(weeks)
        return jsonify({"submissions": submissions, "total": len(submissions)})
    return jsonify({"items": [w.to_dict() for w in weeks], "total": len(weeks)})


@weekly_allocation_bp.route("/<weekly_id>", methods=["POST"])
def decide_week(weekly_id):
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    approver = current_user()

    if action == "approve":
        week, deleted = asm.approve_weekly(weekly_id, approver)
        if deleted:
            return jsonify({"ok": True, "deleted": True, "id": weekly_id})
        return jsonify({"ok": True, "deleted": False, "allocation": week.to_dict()})

    if action == "modify":
        hours = parse_hours(data.get("approvedHours"))
        if hours is None:
            return api_error(E.VALIDATION_REQUIRED, "approvedHours is required for modify")
        week = asm.modify_weekly(weekly_id, hours, approver)
        return jsonify({"ok": True, "allocation": week.to_dict()})

    if action == "reject":
        week = asm.reject_weekly(weekly_id, data.get("rejectionReason"), approver)
        return jsonify({"ok": True, "allocation": week.to_dict()})

    return api_error(E.VALIDATION_INVALID, "action must be one of approve, reject, modify")


@weekly_allocation_bp.route("/batch", methods=["POST"])
def decide_batch():
    data = request.get_json(silent=True) or {}
    raw_items = data.get("allocations")
    if not isinstance(raw_items, list) or not raw_items:
        return api_error(E.VALIDATION_REQUIRED, "allocations must be a non-empty list")
    default_action = data.get("defaultAction", "approve")
    if default_action not in batch_approval.BATCH_ACTIONS:
        return api_error(E.VALIDATION_INVALID, "defaultAction must be one of approve, reject, modify")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict) or not raw.get("id"):
            return api_error(E.VALIDATION_REQUIRED, f"allocations[{idx}].id is required")
        approved_hours = None
        if raw.get("approvedHours") is not None:
            approved_hours = parse_hours(raw.get("approvedHours"))
            if approved_hours is None:
                return api_error(E.VALIDATION_INVALID, f"allocations[{idx}].approvedHours must be a number")
        items.append(batch_approval.BatchItem(
            id=raw["id"],
            action=raw.get("action"),
            approved_hours=approved_hours,
            rejection_reason=raw.get("rejectionReason"),
        ))

    result = batch_approval.apply_batch(
        items,
        default_action=default_action,
        approver_id=current_user(),
        rejection_reason=data.get("rejectionReason"),
    )
    return jsonify(result)
