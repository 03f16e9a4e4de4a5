"""
Phase Allocation Blueprint.

Endpoints:
  POST /phases/<phase_id>/allocations              request hours (new, top-up or composite fold)
  GET  /phases/<phase_id>/allocations              list a phase's allocations
  GET  /phase-allocations/<id>                     detail incl. weekly allocations
  POST /phase-allocations/<id>                     approve | reject | modify | request-deletion
                                                   | delete | reject-deletion
  POST /phase-allocations/<id>/forfeit             EXPIRED → FORFEITED
  POST /phase-allocations/<id>/reallocate          EXPIRED unplanned hours → another phase
"""

from flask import Blueprint, jsonify, request

from hourbook.models.allocation import CompositionKind
from hourbook.services import allocation_ledger as ledger
from hourbook.services import approval_state_machine as asm
from hourbook.services import reallocation_merger as merger
from hourbook.utils.errors import E, api_error, register_error_handlers
from hourbook.utils.helpers import current_user, parse_hours, truthy

phase_allocation_bp = Blueprint("phase_allocation", __name__, url_prefix="/api/v1")
register_error_handlers(phase_allocation_bp)

PHASE_ACTIONS = ("approve", "reject", "modify", "request-deletion", "delete", "reject-deletion")


@phase_allocation_bp.route("/phases/<phase_id>/allocations", methods=["POST"])
def request_allocation(phase_id):
    data = request.get_json(silent=True) or {}
    consultant_id = data.get("consultantId")
    if not consultant_id:
        return api_error(E.VALIDATION_REQUIRED, "consultantId is required")
    hours = parse_hours(data.get("hours"))
    if hours is None:
        return api_error(E.VALIDATION_INVALID, "hours must be a number")

    alloc = ledger.create_or_merge_allocation(
        consultant_id,
        phase_id,
        hours,
        ledger.AllocationOrigin(
            kind=CompositionKind.ASSIGNMENT,
            notes=data.get("notes"),
            actor=current_user(),
        ),
    )
    return jsonify({"ok": True, "allocation": alloc.to_dict()}), 201


@phase_allocation_bp.route("/phases/<phase_id>/allocations", methods=["GET"])
def list_allocations(phase_id):
    items = ledger.list_phase_allocations(phase_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@phase_allocation_bp.route("/phase-allocations/<allocation_id>", methods=["GET"])
def get_allocation(allocation_id):
    alloc = ledger.get_allocation(allocation_id)
    result = alloc.to_dict(include_weeks=True)
    result["committedHours"] = round(ledger.committed_hours(alloc), 2)
    result["remainingHours"] = round(ledger.remaining_hours(alloc), 2)
    return jsonify(result)


@phase_allocation_bp.route("/phase-allocations/<allocation_id>", methods=["POST"])
def decide_allocation(allocation_id):
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    actor = current_user()

    if action == "approve":
        alloc = asm.approve_phase(allocation_id, actor)
        return jsonify({
            "ok": True,
            "allocation": alloc.to_dict(),
            "mergedInto": alloc.id if alloc.id != allocation_id else None,
        })

    if action == "reject":
        alloc = asm.reject_phase(allocation_id, data.get("rejectionReason"), actor)
        return jsonify({"ok": True, "allocation": alloc.to_dict()})

    if action == "modify":
        hours = parse_hours(data.get("modifiedHours"))
        if hours is None:
            return api_error(E.VALIDATION_REQUIRED, "modifiedHours is required for modify")
        alloc = asm.modify_phase(
            allocation_id,
            hours,
            data.get("modificationReason"),
            actor,
            approve=truthy(data.get("approve", False)),
        )
        return jsonify({"ok": True, "allocation": alloc.to_dict()})

    if action == "request-deletion":
        alloc = asm.request_deletion(allocation_id, data.get("deletionReason"), actor)
        return jsonify({"ok": True, "allocation": alloc.to_dict()})

    if action == "delete":
        deleted_id = asm.approve_deletion(allocation_id, actor)
        return jsonify({"ok": True, "deleted": True, "id": deleted_id})

    if action == "reject-deletion":
        alloc = asm.reject_deletion(allocation_id, actor)
        return jsonify({"ok": True, "allocation": alloc.to_dict()})

    return api_error(E.VALIDATION_INVALID, f"action must be one of {', '.join(PHASE_ACTIONS)}")


@phase_allocation_bp.route("/phase-allocations/<allocation_id>/forfeit", methods=["POST"])
def forfeit(allocation_id):
    alloc = merger.forfeit_unplanned_hours(allocation_id, current_user())
    return jsonify({"ok": True, "allocation": alloc.to_dict()})


@phase_allocation_bp.route("/phase-allocations/<allocation_id>/reallocate", methods=["POST"])
def reallocate(allocation_id):
    data = request.get_json(silent=True) or {}
    target_phase_id = data.get("targetPhaseId")
    if not target_phase_id:
        return api_error(E.VALIDATION_REQUIRED, "targetPhaseId is required")

    source, target = merger.reallocate_unplanned_hours(
        allocation_id, target_phase_id, data.get("notes"), current_user(),
    )
    return jsonify({
        "ok": True,
        "source": source.to_dict(),
        "target": target.to_dict(),
    })
