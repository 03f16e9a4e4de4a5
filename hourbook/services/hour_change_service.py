"""
Hour Change Requests: service layer.

Single-stage requests raised by a consultant against an APPROVED allocation:

    ADJUSTMENT  signed delta on total_hours (never below the committed hours)
    SHIFT       move proposed hours from one week to another; both weeks go
                back to PENDING for the weekly approver

PENDING → APPROVED | REJECTED, nothing else.
"""

import logging
from datetime import date, datetime, timezone

from flask import current_app

from hourbook.core.exceptions import (
    ApprovalConflictError,
    BudgetExceededError,
    NotFoundError,
    ValidationError,
)
from hourbook.models import db
from hourbook.models.allocation import (
    CompositionKind,
    HourChangeRequest,
    HourChangeStatus,
    HourChangeType,
    PhaseAllocation,
    PhaseApprovalStatus,
)
from hourbook.models.audit import write_audit
from hourbook.models.planning import Consultant
from hourbook.services import allocation_ledger as ledger
from hourbook.services.locking import (
    alloc_key,
    allocation_transaction,
    load_allocation_for_update,
)
from hourbook.services.reallocation_merger import record_total_change
from hourbook.utils.weeks import week_start

logger = logging.getLogger(__name__)


def _require_approved(alloc: PhaseAllocation, event: str) -> None:
    if alloc.status != PhaseApprovalStatus.APPROVED:
        raise ApprovalConflictError(
            "Hour changes apply only to approved allocations",
            current_status=alloc.approval_status,
            event=event,
        )


def _validate_request_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    minimum = current_app.config.get("REJECTION_REASON_MIN_LENGTH", 10)
    maximum = current_app.config.get("HOUR_CHANGE_REASON_MAX_LENGTH", 500)
    if not minimum <= len(cleaned) <= maximum:
        raise ValidationError(
            f"reason must be between {minimum} and {maximum} characters",
            details={"reason": reason},
        )
    return cleaned


def get_request(request_id: str) -> HourChangeRequest:
    req = db.session.get(HourChangeRequest, request_id)
    if req is None:
        raise NotFoundError(resource="HourChangeRequest", resource_id=request_id)
    return req


def list_requests(status: str | None = None, phase_allocation_id: str | None = None) -> list[HourChangeRequest]:
    q = HourChangeRequest.query
    if status:
        q = q.filter(HourChangeRequest.status == status)
    if phase_allocation_id:
        q = q.filter(HourChangeRequest.phase_allocation_id == phase_allocation_id)
    return q.order_by(HourChangeRequest.created_at).all()


def create_request(
    phase_allocation_id: str,
    requester_id: str | None,
    change_type: str,
    requested_hours: float,
    reason: str,
    from_week_start: date | None = None,
    to_week_start: date | None = None,
) -> HourChangeRequest:
    try:
        change_type = HourChangeType(change_type)
    except ValueError:
        raise ValidationError(
            f"changeType must be one of {[t.value for t in HourChangeType]}",
            details={"changeType": change_type},
        ) from None
    reason = _validate_request_reason(reason)

    alloc = ledger.get_allocation(phase_allocation_id)
    _require_approved(alloc, "request_hour_change")
    requester_id = requester_id or alloc.consultant_id
    if db.session.get(Consultant, requester_id) is None:
        raise NotFoundError(resource="Consultant", resource_id=requester_id)

    if requested_hours is None:
        raise ValidationError("requestedHours is required")
    requested_hours = ledger.finite_hours(requested_hours, "requestedHours")
    if change_type == HourChangeType.ADJUSTMENT:
        if requested_hours == 0:
            raise ValidationError("An adjustment needs a non-zero delta", details={"requestedHours": 0})
        from_week_start = to_week_start = None
    else:
        if requested_hours <= 0:
            raise ValidationError(
                "Shifted hours must be greater than zero",
                details={"requestedHours": requested_hours},
            )
        if from_week_start is None or to_week_start is None:
            raise ValidationError("A shift needs fromWeekStartDate and toWeekStartDate")
        from_week_start, to_week_start = week_start(from_week_start), week_start(to_week_start)
        if from_week_start == to_week_start:
            raise ValidationError(
                "A shift must move hours between two different weeks",
                details={"fromWeekStartDate": from_week_start.isoformat()},
            )

    req = HourChangeRequest(
        phase_allocation_id=alloc.id,
        requester_id=requester_id,
        change_type=change_type.value,
        requested_hours=float(requested_hours),
        reason=reason,
        from_week_start=from_week_start,
        to_week_start=to_week_start,
    )
    db.session.add(req)
    db.session.commit()

    logger.info(
        "Hour change requested: %s %s %sh", alloc.id, change_type.value, requested_hours,
        extra={
            "event_type": "hour_change_request.create",
            "hour_change_request_id": req.id,
            "phase_allocation_id": alloc.id,
        },
    )
    return req


def _require_pending(req: HourChangeRequest, event: str) -> None:
    if req.status != HourChangeStatus.PENDING.value:
        raise ApprovalConflictError(
            f"Hour change request is already {req.status}",
            current_status=req.status,
            event=event,
        )


def _apply_adjustment(alloc: PhaseAllocation, req: HourChangeRequest, actor: str) -> None:
    committed = ledger.committed_hours(alloc)
    new_total = alloc.total_hours + req.requested_hours
    if new_total < committed - ledger.HOURS_EPSILON:
        raise BudgetExceededError(
            excess_hours=round(committed - new_total, 2),
            message=f"{committed:g}h are already planned; total cannot drop to {new_total:g}h",
        )
    if new_total <= 0:
        raise ValidationError(
            "Adjustment would leave the allocation without hours",
            details={"requestedHours": req.requested_hours},
        )
    old_total = alloc.total_hours
    alloc.total_hours = new_total
    record_total_change(alloc, req.requested_hours, CompositionKind.ADJUSTMENT,
                        notes=req.reason, actor=actor)
    write_audit(
        entity_type="phase_allocation", entity_id=alloc.id,
        action="hour_change_request.approve", actor=actor,
        diff={"total_hours": {"old": old_total, "new": new_total}, "hour_change_request_id": req.id},
    )


def _apply_shift(alloc: PhaseAllocation, req: HourChangeRequest, actor: str) -> None:
    weeks = {w.week_start_date: w for w in alloc.weekly_allocations}
    source = weeks.get(req.from_week_start)
    if source is None or source.effective_hours < req.requested_hours - ledger.HOURS_EPSILON:
        raise ValidationError(
            f"Week of {req.from_week_start.isoformat()} does not hold {req.requested_hours:g}h to shift",
            details={"fromWeekStartDate": req.from_week_start.isoformat()},
        )
    moved = req.requested_hours
    ledger.repropose_week(source, source.effective_hours - moved)

    target = weeks.get(req.to_week_start)
    if target is None:
        ledger.add_week(alloc, req.to_week_start, moved)
    else:
        ledger.repropose_week(target, target.effective_hours + moved)

    write_audit(
        entity_type="phase_allocation", entity_id=alloc.id,
        action="hour_change_request.approve", actor=actor,
        diff={
            "shift": {
                "from": req.from_week_start.isoformat(),
                "to": req.to_week_start.isoformat(),
                "hours": moved,
            },
            "hour_change_request_id": req.id,
        },
    )


def approve_request(request_id: str, approver_id: str = "system") -> HourChangeRequest:
    req = get_request(request_id)
    with allocation_transaction(alloc_key(req.phase_allocation_id)):
        alloc = load_allocation_for_update(req.phase_allocation_id)
        db.session.refresh(req)
        _require_pending(req, "approve")
        _require_approved(alloc, "approve_hour_change")

        if req.change_type == HourChangeType.ADJUSTMENT.value:
            _apply_adjustment(alloc, req, approver_id)
        else:
            _apply_shift(alloc, req, approver_id)

        req.status = HourChangeStatus.APPROVED.value
        req.decided_by = approver_id
        req.decided_at = datetime.now(timezone.utc)

    logger.info(
        "Hour change approved: %s", request_id,
        extra={"event_type": "hour_change_request.approve", "hour_change_request_id": request_id},
    )
    return req


def reject_request(request_id: str, reason: str, approver_id: str = "system") -> HourChangeRequest:
    reason = ledger.validate_reason(reason)
    req = get_request(request_id)
    _require_pending(req, "reject")
    req.status = HourChangeStatus.REJECTED.value
    req.rejection_reason = reason
    req.decided_by = approver_id
    req.decided_at = datetime.now(timezone.utc)
    write_audit(
        entity_type="hour_change_request", entity_id=req.id,
        action="hour_change_request.reject", actor=approver_id,
        diff={"status": {"old": HourChangeStatus.PENDING.value, "new": req.status}},
    )
    db.session.commit()

    logger.info(
        "Hour change rejected: %s", request_id,
        extra={"event_type": "hour_change_request.reject", "hour_change_request_id": request_id},
    )
    return req
