"""
Approval State Machine: service layer.

Drives the two approval ladders. Which (status, event) pairs are legal is
decided solely by the transition tables in ``hourbook.models.allocation``;
this module adds the guards around them (reasons, budget, parent status)
and the side effects (stamps, merges, audit rows).

PhaseAllocation ladder:
    approve_phase · reject_phase · modify_phase
    request_deletion · approve_deletion · reject_deletion

WeeklyAllocation ladder (parent must be APPROVED):
    approve_weekly · modify_weekly · reject_weekly

A refused transition raises and leaves every row untouched.
"""

import logging
from datetime import datetime, timezone

from hourbook.core.exceptions import (
    ApprovalConflictError,
    BudgetExceededError,
    ExceedsRemainingBudgetError,
    ValidationError,
)
from hourbook.models import db
from hourbook.models.allocation import (
    CompositionKind,
    PhaseAllocation,
    PhaseApprovalStatus,
    PhaseEvent,
    WeeklyAllocation,
    WeeklyEvent,
    WeeklyPlanningStatus,
    next_phase_status,
    next_weekly_status,
)
from hourbook.models.audit import write_audit
from hourbook.services.allocation_ledger import (
    GRANT_STATUSES,
    HOURS_EPSILON,
    committed_hours,
    finite_hours,
    validate_reason,
)
from hourbook.services.locking import (
    alloc_key,
    allocation_transaction,
    load_allocation_for_update,
    load_weekly_for_update,
    pair_key,
    peek_allocation,
    peek_weekly,
)
from hourbook.services.reallocation_merger import (
    merge_child_into_parent,
    record_total_change,
)

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


def _phase_keys(alloc: PhaseAllocation) -> list[str]:
    keys = [alloc_key(alloc.id), pair_key(alloc.consultant_id, alloc.phase_id)]
    if alloc.parent_allocation_id:
        keys.append(alloc_key(alloc.parent_allocation_id))
    return keys


def _log(message, alloc_id, event_type, *args, **extra):
    logger.info(
        message, *args,
        extra={"event_type": event_type, "phase_allocation_id": alloc_id, **extra},
    )


# ═════════════════════════════════════════════════════════════════════════════
# PhaseAllocation ladder
# ═════════════════════════════════════════════════════════════════════════════


def _approve_loaded(alloc: PhaseAllocation, approver_id: str) -> PhaseAllocation:
    """Approve an already locked PENDING allocation; returns the surviving row."""
    target = next_phase_status(alloc.approval_status, PhaseEvent.APPROVE)

    if alloc.parent_allocation_id:
        parent = db.session.get(PhaseAllocation, alloc.parent_allocation_id)
        if (
            parent is not None
            and parent.status == PhaseApprovalStatus.APPROVED
            and parent.consultant_id == alloc.consultant_id
            and parent.phase_id == alloc.phase_id
        ):
            parent = load_allocation_for_update(parent.id)
            return merge_child_into_parent(alloc, parent, actor=approver_id)
        if parent is not None and parent.approval_status in GRANT_STATUSES:
            # Parent can still return to APPROVED
            raise ApprovalConflictError(
                f"Parent allocation {parent.id} is {parent.approval_status}; "
                "resolve it before approving this top-up",
                current_status=parent.approval_status,
                event=PhaseEvent.APPROVE.value,
            )
        # Parent was deleted, rejected or forfeited since the request was made
        alloc.parent_allocation_id = None

    alloc.approval_status = target.value
    alloc.approved_by = approver_id
    alloc.approved_at = _now()
    write_audit(
        entity_type="phase_allocation", entity_id=alloc.id,
        action="phase_allocation.approve", actor=approver_id,
        diff={"approval_status": {"old": PhaseApprovalStatus.PENDING.value, "new": target.value}},
    )
    return alloc


def approve_phase(allocation_id: str, approver_id: str = "system") -> PhaseAllocation:
    """
    PENDING → APPROVED.

    A pending top-up of an APPROVED grant merges into that grant and is
    deleted; the returned allocation is then the parent.
    """
    peeked = peek_allocation(allocation_id)
    with allocation_transaction(*_phase_keys(peeked)):
        alloc = load_allocation_for_update(allocation_id)
        result = _approve_loaded(alloc, approver_id)
        result_id = result.id

    _log("Phase allocation approved: %s", allocation_id, "phase_allocation.approve",
         allocation_id, merged_into=result_id if result_id != allocation_id else None)
    return result


def reject_phase(allocation_id: str, reason: str, approver_id: str = "system") -> PhaseAllocation:
    """PENDING → REJECTED with a reason of at least ten characters."""
    reason = validate_reason(reason)
    peeked = peek_allocation(allocation_id)
    with allocation_transaction(*_phase_keys(peeked)):
        alloc = load_allocation_for_update(allocation_id)
        target = next_phase_status(alloc.approval_status, PhaseEvent.REJECT)
        alloc.approval_status = target.value
        alloc.rejection_reason = reason
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.reject", actor=approver_id,
            diff={"approval_status": {"old": PhaseApprovalStatus.PENDING.value, "new": target.value}},
        )

    _log("Phase allocation rejected: %s", allocation_id, "phase_allocation.reject", allocation_id)
    return alloc


def modify_phase(
    allocation_id: str,
    modified_hours: float,
    modification_reason: str | None = None,
    approver_id: str = "system",
    approve: bool = False,
) -> PhaseAllocation:
    """
    Change the requested total of a PENDING allocation.

    The new total may not drop below the hours already committed in weeks.
    With ``approve=True`` the allocation is approved in the same transaction.
    """
    modified_hours = finite_hours(modified_hours, "modifiedHours")
    if modified_hours <= 0:
        raise ValidationError(
            "Modified hours must be greater than zero",
            details={"modifiedHours": modified_hours},
        )

    peeked = peek_allocation(allocation_id)
    with allocation_transaction(*_phase_keys(peeked)):
        alloc = load_allocation_for_update(allocation_id)
        next_phase_status(alloc.approval_status, PhaseEvent.MODIFY)

        committed = committed_hours(alloc)
        if modified_hours < committed - HOURS_EPSILON:
            raise BudgetExceededError(
                excess_hours=round(committed - modified_hours, 2),
                message=f"{committed:g}h are already planned; total cannot drop to {modified_hours:g}h",
            )

        old_total = alloc.total_hours
        alloc.modified_from_hours = old_total
        alloc.total_hours = float(modified_hours)
        alloc.modification_reason = (modification_reason or "").strip() or None
        record_total_change(alloc, alloc.total_hours - old_total, CompositionKind.MODIFICATION,
                            notes=alloc.modification_reason, actor=approver_id)
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.modify", actor=approver_id,
            diff={"total_hours": {"old": old_total, "new": alloc.total_hours}},
        )
        if approve:
            alloc = _approve_loaded(alloc, approver_id)

    _log("Phase allocation modified: %s %sh → %sh", allocation_id, "phase_allocation.modify",
         allocation_id, old_total, modified_hours)
    return alloc


def request_deletion(allocation_id: str, reason: str | None = None,
                     actor: str = "system") -> PhaseAllocation:
    """APPROVED → DELETION_PENDING."""
    with allocation_transaction(alloc_key(allocation_id)):
        alloc = load_allocation_for_update(allocation_id)
        target = next_phase_status(alloc.approval_status, PhaseEvent.REQUEST_DELETION)
        alloc.approval_status = target.value
        alloc.deletion_reason = (reason or "").strip() or None
        alloc.deletion_requested_by = actor
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.request_deletion", actor=actor,
            diff={"approval_status": {"old": PhaseApprovalStatus.APPROVED.value, "new": target.value}},
        )

    _log("Deletion requested: %s", allocation_id, "phase_allocation.request_deletion", allocation_id)
    return alloc


def approve_deletion(allocation_id: str, approver_id: str = "system") -> str:
    """DELETION_PENDING → hard delete, weeks and composition log included."""
    with allocation_transaction(alloc_key(allocation_id)):
        alloc = load_allocation_for_update(allocation_id)
        next_phase_status(alloc.approval_status, PhaseEvent.APPROVE_DELETION)
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.delete", actor=approver_id,
            diff={
                "total_hours": {"old": alloc.total_hours, "new": None},
                "weeks": {"old": len(alloc.weekly_allocations), "new": 0},
                "deletion_reason": alloc.deletion_reason,
            },
        )
        PhaseAllocation.query.filter_by(parent_allocation_id=allocation_id).update(
            {"parent_allocation_id": None}, synchronize_session="fetch",
        )
        db.session.delete(alloc)

    _log("Phase allocation deleted: %s", allocation_id, "phase_allocation.delete", allocation_id)
    return allocation_id


def reject_deletion(allocation_id: str, approver_id: str = "system") -> PhaseAllocation:
    """DELETION_PENDING → APPROVED."""
    with allocation_transaction(alloc_key(allocation_id)):
        alloc = load_allocation_for_update(allocation_id)
        target = next_phase_status(alloc.approval_status, PhaseEvent.REJECT_DELETION)
        alloc.approval_status = target.value
        alloc.deletion_reason = None
        alloc.deletion_requested_by = None
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.reject_deletion", actor=approver_id,
            diff={"approval_status": {"old": PhaseApprovalStatus.DELETION_PENDING.value, "new": target.value}},
        )

    _log("Deletion rejected: %s", allocation_id, "phase_allocation.reject_deletion", allocation_id)
    return alloc


# ═════════════════════════════════════════════════════════════════════════════
# WeeklyAllocation ladder
# ═════════════════════════════════════════════════════════════════════════════


def _require_approved_parent(alloc: PhaseAllocation, event: WeeklyEvent) -> None:
    if alloc.status != PhaseApprovalStatus.APPROVED:
        raise ApprovalConflictError(
            "Weekly hours can only be decided while the phase allocation is approved",
            current_status=alloc.approval_status,
            event=f"{event.value}_weekly",
        )


def _load_weekly(weekly_id: str, event: WeeklyEvent) -> tuple[PhaseAllocation, WeeklyAllocation]:
    """Inside the allocation transaction: lock parent then week, check the parent."""
    alloc = load_allocation_for_update(peek_weekly(weekly_id).phase_allocation_id)
    week = load_weekly_for_update(weekly_id)
    _require_approved_parent(alloc, event)
    return alloc, week


def approve_weekly(weekly_id: str, approver_id: str = "system") -> tuple[WeeklyAllocation, bool]:
    """
    PENDING → APPROVED with approved_hours = proposed_hours.

    A week proposed at zero hours is removed instead. Returns
    ``(week, deleted)``.
    """
    parent_id = peek_weekly(weekly_id).phase_allocation_id
    deleted = False
    with allocation_transaction(alloc_key(parent_id)):
        alloc, week = _load_weekly(weekly_id, WeeklyEvent.APPROVE)
        target = next_weekly_status(week.planning_status, WeeklyEvent.APPROVE)
        if not week.proposed_hours:
            alloc.weekly_allocations.remove(week)
            db.session.delete(week)
            deleted = True
        else:
            week.planning_status = target.value
            week.approved_hours = week.proposed_hours
            week.approved_by = approver_id
            week.approved_at = _now()
            week.rejection_reason = None
        write_audit(
            entity_type="weekly_allocation", entity_id=weekly_id,
            action="weekly_allocation.delete" if deleted else "weekly_allocation.approve",
            actor=approver_id,
            diff={"planning_status": {"old": WeeklyPlanningStatus.PENDING.value,
                                      "new": None if deleted else target.value}},
        )

    logger.info(
        "Weekly allocation %s: %s", "removed" if deleted else "approved", weekly_id,
        extra={
            "event_type": "weekly_allocation.approve",
            "weekly_allocation_id": weekly_id,
            "phase_allocation_id": parent_id,
        },
    )
    return week, deleted


def modify_weekly(weekly_id: str, approved_hours: float,
                  approver_id: str = "system") -> WeeklyAllocation:
    """
    PENDING → MODIFIED with an approver-chosen number of hours.

    Raises:
        ValidationError:             hours <= 0 or equal to the proposal
        ExceedsRemainingBudgetError: hours do not fit next to the other weeks
    """
    approved_hours = finite_hours(approved_hours, "approvedHours")
    if approved_hours <= 0:
        raise ValidationError(
            "Approved hours must be greater than zero",
            details={"approvedHours": approved_hours},
        )

    parent_id = peek_weekly(weekly_id).phase_allocation_id
    with allocation_transaction(alloc_key(parent_id)):
        alloc, week = _load_weekly(weekly_id, WeeklyEvent.MODIFY)
        target = next_weekly_status(week.planning_status, WeeklyEvent.MODIFY)
        if approved_hours == week.proposed_hours:
            raise ValidationError(
                "Approved hours equal the proposal; approve the week instead",
                details={"approvedHours": approved_hours},
            )
        remaining = alloc.total_hours - committed_hours(alloc, exclude_week=week.week_start_date)
        if approved_hours > remaining + HOURS_EPSILON:
            raise ExceedsRemainingBudgetError(
                remaining_hours=round(remaining, 2), requested_hours=approved_hours,
            )
        week.planning_status = target.value
        week.approved_hours = float(approved_hours)
        week.approved_by = approver_id
        week.approved_at = _now()
        week.rejection_reason = None
        write_audit(
            entity_type="weekly_allocation", entity_id=weekly_id,
            action="weekly_allocation.modify", actor=approver_id,
            diff={"hours": {"old": week.proposed_hours, "new": week.approved_hours}},
        )

    logger.info(
        "Weekly allocation modified: %s → %sh", weekly_id, approved_hours,
        extra={
            "event_type": "weekly_allocation.modify",
            "weekly_allocation_id": weekly_id,
            "phase_allocation_id": parent_id,
        },
    )
    return week


def reject_weekly(weekly_id: str, reason: str, approver_id: str = "system") -> WeeklyAllocation:
    """PENDING → REJECTED. Resubmission goes through the ledger with clear_rejection."""
    reason = validate_reason(reason)
    parent_id = peek_weekly(weekly_id).phase_allocation_id
    with allocation_transaction(alloc_key(parent_id)):
        _, week = _load_weekly(weekly_id, WeeklyEvent.REJECT)
        target = next_weekly_status(week.planning_status, WeeklyEvent.REJECT)
        week.planning_status = target.value
        week.approved_hours = None
        week.rejection_reason = reason
        week.approved_by = approver_id
        week.approved_at = _now()
        write_audit(
            entity_type="weekly_allocation", entity_id=weekly_id,
            action="weekly_allocation.reject", actor=approver_id,
            diff={"rejection_reason": reason},
        )

    logger.info(
        "Weekly allocation rejected: %s", weekly_id,
        extra={
            "event_type": "weekly_allocation.reject",
            "weekly_allocation_id": weekly_id,
            "phase_allocation_id": parent_id,
        },
    )
    return week
