"""
Expiry job.

Moves APPROVED allocations whose phase has ended while hours were still left
unplanned to EXPIRED. From there an approver forfeits or reallocates them
(see reallocation_merger). Run from the scheduler through
``flask expire-allocations``; never called on the request path.
"""

import logging
from datetime import date

from flask import current_app

from hourbook.models.allocation import (
    PhaseAllocation,
    PhaseApprovalStatus,
    PhaseEvent,
    next_phase_status,
)
from hourbook.models.audit import write_audit
from hourbook.models.planning import Phase
from hourbook.services import allocation_ledger as ledger
from hourbook.services.locking import (
    alloc_key,
    allocation_transaction,
    load_allocation_for_update,
)

logger = logging.getLogger(__name__)


def detect_expired_allocations(today: date | None = None) -> dict:
    """
    Expire every lapsed APPROVED allocation with unplanned hours.

    Each allocation is handled in its own transaction. Returns
    ``{"checked": int, "expired": [allocation_id, ...]}``.
    """
    today = today or date.today()
    epsilon = current_app.config.get("EXPIRY_UNPLANNED_EPSILON", 0.01)

    candidate_ids = [
        row.id
        for row in (
            PhaseAllocation.query
            .join(Phase, PhaseAllocation.phase_id == Phase.id)
            .filter(
                PhaseAllocation.approval_status == PhaseApprovalStatus.APPROVED.value,
                Phase.end_date < today,
            )
            .with_entities(PhaseAllocation.id)
            .all()
        )
    ]

    expired = []
    for allocation_id in candidate_ids:
        with allocation_transaction(alloc_key(allocation_id)):
            alloc = load_allocation_for_update(allocation_id)
            if alloc.status != PhaseApprovalStatus.APPROVED:
                continue
            unplanned = ledger.remaining_hours(alloc)
            if unplanned <= epsilon:
                continue
            target = next_phase_status(alloc.approval_status, PhaseEvent.EXPIRE)
            alloc.approval_status = target.value
            write_audit(
                entity_type="phase_allocation", entity_id=alloc.id,
                action="phase_allocation.expire", actor="system",
                diff={
                    "approval_status": {"old": PhaseApprovalStatus.APPROVED.value, "new": target.value},
                    "unplanned_hours": round(unplanned, 2),
                },
            )
        expired.append(allocation_id)
        logger.info(
            "Allocation expired with %.2fh unplanned: %s", unplanned, allocation_id,
            extra={"event_type": "phase_allocation.expire", "phase_allocation_id": allocation_id},
        )

    logger.info(
        "Expiry run: %d checked, %d expired", len(candidate_ids), len(expired),
        extra={"event_type": "phase_allocation.expiry_run"},
    )
    return {"checked": len(candidate_ids), "expired": expired}
