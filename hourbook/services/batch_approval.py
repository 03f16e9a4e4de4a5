"""
Batch Approval Coordinator: service layer.

Applies an approver's decisions over many weekly allocations. Every item runs
in its own allocation transaction: one bad item is rolled back and reported,
the rest of the batch still commits.

    apply_batch([BatchItem(id=..., approved_hours=6)], default_action="approve")
    → {"updated": 1, "failed": []}

Also groups pending weeks into submissions for the approval queue.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta

from hourbook.core.exceptions import EngineError, ValidationError
from hourbook.models import db
from hourbook.models.allocation import (
    PhaseAllocation,
    PhaseApprovalStatus,
    WeeklyAllocation,
    WeeklyPlanningStatus,
)
from hourbook.services import approval_state_machine as asm
from hourbook.services.locking import peek_weekly

logger = logging.getLogger(__name__)

BATCH_ACTIONS = ("approve", "reject", "modify")


@dataclass
class BatchItem:
    id: str
    action: str | None = None
    approved_hours: float | None = None
    rejection_reason: str | None = None


def _apply_item(item: BatchItem, action: str, approver_id: str, rejection_reason: str | None):
    if action == "approve":
        if item.approved_hours is not None:
            week = peek_weekly(item.id)
            if item.approved_hours != week.proposed_hours:
                asm.modify_weekly(item.id, item.approved_hours, approver_id)
                return
        asm.approve_weekly(item.id, approver_id)
    elif action == "modify":
        asm.modify_weekly(item.id, item.approved_hours, approver_id)
    elif action == "reject":
        asm.reject_weekly(item.id, item.rejection_reason or rejection_reason, approver_id)
    else:
        raise ValidationError(
            f"Unknown action {action!r}",
            details={"action": action, "allowed": list(BATCH_ACTIONS)},
        )


def apply_batch(
    items: list[BatchItem],
    default_action: str = "approve",
    approver_id: str = "system",
    rejection_reason: str | None = None,
) -> dict:
    """
    Decide every item independently.

    Returns ``{"updated": int, "failed": [{"id", "reason", "message"}]}``
    where ``reason`` is the engine error code of the failure.
    """
    updated = 0
    failed = []
    for item in items:
        action = item.action or default_action
        try:
            _apply_item(item, action, approver_id, rejection_reason)
            updated += 1
        except EngineError as exc:
            db.session.rollback()
            failed.append({"id": item.id, "reason": exc.code, "message": exc.message})
            logger.info(
                "Batch item %s failed: %s", item.id, exc.code,
                extra={"event_type": "weekly_allocation.batch_item_failed", "weekly_allocation_id": item.id},
            )

    logger.info(
        "Batch applied: %d updated, %d failed", updated, len(failed),
        extra={"event_type": "weekly_allocation.batch", "actor": approver_id},
    )
    return {"updated": updated, "failed": failed}


def approve_batch(weekly_allocation_ids: list[str], approver_id: str = "system") -> dict:
    """Approve every listed week at its proposed hours."""
    return apply_batch(
        [BatchItem(id=wid) for wid in weekly_allocation_ids],
        default_action="approve",
        approver_id=approver_id,
    )


# ── Approval queue ───────────────────────────────────────────────────────────


def pending_weekly_allocations() -> list[WeeklyAllocation]:
    """PENDING weeks whose phase allocation is APPROVED, oldest first."""
    return (
        WeeklyAllocation.query
        .join(PhaseAllocation, WeeklyAllocation.phase_allocation_id == PhaseAllocation.id)
        .filter(
            WeeklyAllocation.planning_status == WeeklyPlanningStatus.PENDING.value,
            PhaseAllocation.approval_status == PhaseApprovalStatus.APPROVED.value,
        )
        .order_by(WeeklyAllocation.updated_at, WeeklyAllocation.week_start_date)
        .all()
    )


def _round_to_minute(value: datetime) -> datetime:
    return (value + timedelta(seconds=30)).replace(second=0, microsecond=0)


def group_submissions(weekly_allocations: list[WeeklyAllocation]) -> list[dict]:
    """
    Group weeks into the submissions they arrived in.

    Rows carrying a submission_batch_id group by it. Older rows without one
    fall back to consultant + updated_at rounded to the nearest minute.
    """
    groups: "OrderedDict[str, dict]" = OrderedDict()
    for week in weekly_allocations:
        if week.submission_batch_id:
            key = week.submission_batch_id
            submitted_at = week.updated_at
        else:
            submitted_at = _round_to_minute(week.updated_at) if week.updated_at else None
            key = f"{week.consultant_id}:{submitted_at.isoformat() if submitted_at else '-'}"

        group = groups.get(key)
        if group is None:
            group = groups[key] = {
                "key": key,
                "submissionBatchId": week.submission_batch_id,
                "consultantId": week.consultant_id,
                "submittedAt": submitted_at.isoformat() if submitted_at else None,
                "totalProposedHours": 0.0,
                "weeks": [],
            }
        group["weeks"].append(week.to_dict())
        group["totalProposedHours"] += week.proposed_hours or 0.0
    return list(groups.values())
