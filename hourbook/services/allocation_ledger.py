"""
Allocation Ledger: service layer.

Owns PhaseAllocation / WeeklyAllocation writes and enforces the budget rule
on every one of them:

    sum(week.approved_hours ?? week.proposed_hours ?? 0)  <=  allocation.total_hours

Business logic for:
    - Weekly submissions:   single week or a whole plan, with idempotent resubmission
    - Allocation requests:  new PENDING grant, top-up of an APPROVED grant, or
                            fold into an existing PENDING request (composite)
    - Read helpers:         committed / remaining hours
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date

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
    PhaseAllocation,
    PhaseApprovalStatus,
    WeeklyAllocation,
    WeeklyEvent,
    WeeklyPlanningStatus,
    next_weekly_status,
)
from hourbook.models.planning import Consultant, Phase
from hourbook.services.locking import (
    alloc_key,
    allocation_transaction,
    load_allocation_for_update,
    request_transaction,
)
from hourbook.utils.weeks import iso_week, week_end, week_start

logger = logging.getLogger(__name__)

# Float slack when comparing hour sums
HOURS_EPSILON = 1e-9

# A later request for the pair points at a grant in any status that can return to APPROVED
GRANT_STATUSES = (
    PhaseApprovalStatus.APPROVED.value,
    PhaseApprovalStatus.DELETION_PENDING.value,
    PhaseApprovalStatus.EXPIRED.value,
)


@dataclass
class AllocationOrigin:
    """Where a requested block of hours comes from."""

    kind: CompositionKind = CompositionKind.ASSIGNMENT
    source_phase_id: str | None = None
    source_allocation_id: str | None = None
    notes: str | None = None
    actor: str = "system"


# ── Read helpers ─────────────────────────────────────────────────────────────


def committed_hours(allocation: PhaseAllocation, exclude_week: date | None = None) -> float:
    """Sum of approved (else proposed) hours over the allocation's weeks."""
    return sum(
        w.effective_hours
        for w in allocation.weekly_allocations
        if exclude_week is None or w.week_start_date != exclude_week
    )


def remaining_hours(allocation: PhaseAllocation) -> float:
    return allocation.total_hours - committed_hours(allocation)


def get_allocation(allocation_id: str) -> PhaseAllocation:
    alloc = db.session.get(PhaseAllocation, allocation_id)
    if alloc is None:
        raise NotFoundError(resource="PhaseAllocation", resource_id=allocation_id)
    return alloc


def list_phase_allocations(phase_id: str) -> list[PhaseAllocation]:
    if db.session.get(Phase, phase_id) is None:
        raise NotFoundError(resource="Phase", resource_id=phase_id)
    return (
        PhaseAllocation.query
        .filter_by(phase_id=phase_id)
        .order_by(PhaseAllocation.created_at)
        .all()
    )


def list_weekly_allocations(
    consultant_id: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: str | None = None,
) -> list[WeeklyAllocation]:
    q = WeeklyAllocation.query
    if consultant_id:
        q = q.filter(WeeklyAllocation.consultant_id == consultant_id)
    if start_date:
        q = q.filter(WeeklyAllocation.week_start_date >= week_start(start_date))
    if end_date:
        q = q.filter(WeeklyAllocation.week_start_date <= end_date)
    if status:
        q = q.filter(WeeklyAllocation.planning_status == status)
    return q.order_by(WeeklyAllocation.week_start_date, WeeklyAllocation.created_at).all()


# ── Weekly submissions ───────────────────────────────────────────────────────


def finite_hours(value, field: str) -> float:
    """``value`` as a float; None, non-numbers, NaN and infinities raise ValidationError."""
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: str(value)}) from None
    if not math.isfinite(hours):
        raise ValidationError(f"{field} must be a finite number", details={field: str(value)})
    return hours


def _validate_hours(hours) -> float:
    hours = finite_hours(hours, "plannedHours")
    if hours < 0:
        raise ValidationError(
            "Planned hours must be zero or greater",
            details={"plannedHours": hours},
        )
    return hours


def _prospective_hours(week: WeeklyAllocation | None, hours: float) -> float:
    # An unchanged resubmission keeps whatever an approver already decided
    if (
        week is not None
        and week.status != WeeklyPlanningStatus.REJECTED
        and week.proposed_hours == hours
    ):
        return week.effective_hours
    return hours


def _apply_plan(
    alloc: PhaseAllocation,
    plan: list[tuple[date, float, str | None]],
    *,
    clear_rejection: bool,
    submission_batch_id: str | None,
) -> list[WeeklyAllocation]:
    if alloc.status != PhaseApprovalStatus.APPROVED:
        raise ApprovalConflictError(
            "Weekly hours can only be planned against an approved allocation",
            current_status=alloc.approval_status,
            event="submit_weekly_hours",
        )

    existing = {w.week_start_date: w for w in alloc.weekly_allocations}

    # Validate everything before the first write
    substituted: dict[date, float] = {}
    for monday, hours, _ in plan:
        week = existing.get(monday)
        if week is not None and week.status == WeeklyPlanningStatus.REJECTED and not clear_rejection:
            raise ApprovalConflictError(
                f"Week of {monday.isoformat()} was rejected; resubmit with clearRejection",
                current_status=week.planning_status,
                event=WeeklyEvent.EDIT.value,
            )
        substituted[monday] = _prospective_hours(week, hours)

    prospective = sum(
        w.effective_hours for monday, w in existing.items() if monday not in substituted
    ) + sum(substituted.values())
    excess = prospective - alloc.total_hours
    if excess > HOURS_EPSILON:
        raise BudgetExceededError(excess_hours=round(excess, 2))

    written = []
    for monday, hours, description in plan:
        week = existing.get(monday)
        if week is None:
            week = add_week(alloc, monday, hours)
        elif week.status == WeeklyPlanningStatus.REJECTED or week.proposed_hours != hours:
            repropose_week(week, hours)

        week.rejection_reason = None
        if description is not None:
            week.consultant_description = description
        if submission_batch_id:
            week.submission_batch_id = submission_batch_id
        written.append(week)
    return written


def add_week(alloc: PhaseAllocation, monday: date, hours: float) -> WeeklyAllocation:
    """New PENDING week under ``alloc``; the caller has already checked the budget."""
    iso_year, iso_number = iso_week(monday)
    week = WeeklyAllocation(
        consultant_id=alloc.consultant_id,
        week_start_date=monday,
        week_end_date=week_end(monday),
        week_number=iso_number,
        year=iso_year,
        proposed_hours=hours,
        planning_status=WeeklyPlanningStatus.PENDING.value,
    )
    alloc.weekly_allocations.append(week)
    return week


def repropose_week(week: WeeklyAllocation, hours: float) -> None:
    """Replace the proposal and send the week back to PENDING for a new decision."""
    event = (
        WeeklyEvent.RESUBMIT if week.status == WeeklyPlanningStatus.REJECTED
        else WeeklyEvent.EDIT
    )
    week.planning_status = next_weekly_status(week.status, event).value
    _reset_decision(week, hours)
    week.rejection_reason = None


def _reset_decision(week: WeeklyAllocation, hours: float) -> None:
    week.proposed_hours = hours
    week.approved_hours = None
    week.approved_by = None
    week.approved_at = None


def submit_weekly_hours(
    phase_allocation_id: str,
    week_start_date: date,
    hours: float,
    *,
    clear_rejection: bool = False,
    consultant_description: str | None = None,
    submission_batch_id: str | None = None,
) -> WeeklyAllocation:
    """
    Upsert one week of proposed hours.

    Raises:
        ValidationError:        hours < 0
        ApprovalConflictError:  parent not APPROVED, or week REJECTED without clear_rejection
        BudgetExceededError:    the substituted weekly sum would exceed total_hours
    """
    hours = _validate_hours(hours)
    monday = week_start(week_start_date)

    with allocation_transaction(alloc_key(phase_allocation_id)):
        alloc = load_allocation_for_update(phase_allocation_id)
        (week,) = _apply_plan(
            alloc,
            [(monday, hours, consultant_description)],
            clear_rejection=clear_rejection,
            submission_batch_id=submission_batch_id,
        )

    logger.info(
        "Weekly hours submitted: %s %sh for week of %s",
        phase_allocation_id, hours, monday.isoformat(),
        extra={
            "event_type": "weekly_allocation.submit",
            "phase_allocation_id": phase_allocation_id,
            "weekly_allocation_id": week.id,
            "consultant_id": week.consultant_id,
        },
    )
    return week


def submit_weekly_plan(
    phase_allocation_id: str,
    weeks: list[dict],
    *,
    clear_rejection: bool = False,
) -> tuple[str, list[WeeklyAllocation]]:
    """
    Write several weeks in one transaction under one submission batch.

    ``weeks`` items: ``{"week_start_date": date, "hours": float, "description": str | None}``.
    The budget check covers the whole substituted plan. Returns
    ``(submission_batch_id, written_weeks)``.
    """
    if not weeks:
        raise ValidationError("A weekly plan needs at least one week")

    plan = []
    seen = set()
    for item in weeks:
        hours = _validate_hours(item.get("hours"))
        monday = week_start(item["week_start_date"])
        if monday in seen:
            raise ValidationError(
                f"Week of {monday.isoformat()} appears twice in the plan",
                details={"weekStartDate": monday.isoformat()},
            )
        seen.add(monday)
        plan.append((monday, hours, item.get("description")))

    batch_id = str(uuid.uuid4())
    with allocation_transaction(alloc_key(phase_allocation_id)):
        alloc = load_allocation_for_update(phase_allocation_id)
        written = _apply_plan(
            alloc, plan, clear_rejection=clear_rejection, submission_batch_id=batch_id,
        )

    logger.info(
        "Weekly plan submitted: %s (%d weeks)", phase_allocation_id, len(written),
        extra={
            "event_type": "weekly_allocation.submit_plan",
            "phase_allocation_id": phase_allocation_id,
            "submission_batch_id": batch_id,
        },
    )
    return batch_id, written


# ── Allocation requests ──────────────────────────────────────────────────────


def create_or_merge_allocation(
    consultant_id: str,
    phase_id: str,
    hours: float,
    origin: AllocationOrigin | None = None,
) -> PhaseAllocation:
    """
    Entry point for assignment and reallocation requests.

    A PENDING request for the same (consultant, phase) absorbs the hours as a
    composite; otherwise a new PENDING allocation is created, pointing at the
    pair's grant when one exists (APPROVED, or DELETION_PENDING and EXPIRED
    grants still awaiting a decision).
    """
    origin = origin or AllocationOrigin()
    hours = finite_hours(hours, "hours")
    if hours <= 0:
        raise ValidationError("Requested hours must be greater than zero", details={"hours": hours})
    if db.session.get(Consultant, consultant_id) is None:
        raise NotFoundError(resource="Consultant", resource_id=consultant_id)
    if db.session.get(Phase, phase_id) is None:
        raise NotFoundError(resource="Phase", resource_id=phase_id)

    with request_transaction(consultant_id, phase_id) as pending:
        alloc = request_hours(consultant_id, phase_id, float(hours), origin, pending)
    return alloc


def request_hours(
    consultant_id: str,
    phase_id: str,
    hours: float,
    origin: AllocationOrigin,
    pending: PhaseAllocation | None,
) -> PhaseAllocation:
    """
    Body of ``create_or_merge_allocation``.

    The caller holds ``request_transaction`` for the pair, which yielded
    ``pending``, and commits.
    """
    from hourbook.services.reallocation_merger import fold_into_composite

    if pending is not None:
        fold_into_composite(pending, hours, origin)
        logger.info(
            "Folded %sh into pending allocation %s", hours, pending.id,
            extra={
                "event_type": "phase_allocation.fold",
                "phase_allocation_id": pending.id,
                "consultant_id": consultant_id,
                "phase_id": phase_id,
            },
        )
        return pending

    grant = (
        PhaseAllocation.query
        .filter(
            PhaseAllocation.consultant_id == consultant_id,
            PhaseAllocation.phase_id == phase_id,
            PhaseAllocation.approval_status.in_(GRANT_STATUSES),
        )
        .order_by(PhaseAllocation.created_at)
        .first()
    )
    alloc = PhaseAllocation(
        consultant_id=consultant_id,
        phase_id=phase_id,
        total_hours=hours,
        approval_status=PhaseApprovalStatus.PENDING.value,
        parent_allocation_id=grant.id if grant else None,
        created_by=origin.actor,
    )
    if origin.kind == CompositionKind.REALLOCATION:
        alloc.reallocated_from_phase_id = origin.source_phase_id
        alloc.reallocated_from_allocation_id = origin.source_allocation_id
        alloc.reallocated_hours = hours
        alloc.reallocation_notes = origin.notes
    db.session.add(alloc)
    db.session.flush()

    logger.info(
        "Allocation requested: %sh for consultant %s on phase %s", hours, consultant_id, phase_id,
        extra={
            "event_type": "phase_allocation.create",
            "phase_allocation_id": alloc.id,
            "consultant_id": consultant_id,
            "phase_id": phase_id,
        },
    )
    return alloc


def rejection_reason_min_length() -> int:
    return current_app.config.get("REJECTION_REASON_MIN_LENGTH", 10)


def validate_reason(reason: str | None, field: str = "rejectionReason") -> str:
    """Reasons must carry at least REJECTION_REASON_MIN_LENGTH non-blank characters."""
    cleaned = (reason or "").strip()
    minimum = rejection_reason_min_length()
    if len(cleaned) < minimum:
        raise ValidationError(
            f"{field} must be at least {minimum} characters",
            details={field: reason},
        )
    return cleaned
