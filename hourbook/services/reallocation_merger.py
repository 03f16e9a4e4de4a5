"""
Reallocation Merger: service layer.

Keeps one record per (consultant, phase) request stream:

    Scenario A  pending top-up of an APPROVED grant
                → on approval the child folds into the parent (merge_child_into_parent)
    Scenario B  a second request while one is still PENDING
                → the pending row becomes composite (fold_into_composite)

Also owns what happens to hours left unplanned when a phase lapses:
forfeit them, or reallocate them to another phase of the same consultant.

Composite rows carry an append-only contribution log
(PhaseAllocationComposition). After every append the contributions must add
up to total_hours, otherwise CompositionError aborts the transaction.
"""

import logging
from datetime import date

from hourbook.core.exceptions import (
    ApprovalConflictError,
    CompositionError,
    NotFoundError,
    ValidationError,
)
from hourbook.models import db
from hourbook.models.allocation import (
    CompositionKind,
    PhaseAllocation,
    PhaseAllocationComposition,
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
    peek_allocation,
    request_transaction,
)

logger = logging.getLogger(__name__)

_COMPOSITION_TOLERANCE = 1e-6


# ── Composition log ──────────────────────────────────────────────────────────


def append_entry(
    alloc: PhaseAllocation,
    kind: CompositionKind,
    *,
    original_hours: float | None = None,
    reallocated_hours: float | None = None,
    reallocated_from_phase_id: str | None = None,
    source_allocation_id: str | None = None,
    notes: str | None = None,
    actor: str = "system",
) -> PhaseAllocationComposition:
    sequence = max((e.sequence for e in alloc.composition_entries), default=0) + 1
    entry = PhaseAllocationComposition(
        sequence=sequence,
        kind=CompositionKind(kind).value,
        original_hours=original_hours,
        reallocated_hours=reallocated_hours,
        reallocated_from_phase_id=reallocated_from_phase_id,
        source_allocation_id=source_allocation_id,
        notes=notes,
        created_by=actor,
    )
    alloc.composition_entries.append(entry)
    return entry


def check_composition(alloc: PhaseAllocation) -> None:
    if not alloc.is_composite:
        return
    actual = alloc.composition_total()
    if abs(actual - alloc.total_hours) > _COMPOSITION_TOLERANCE:
        logger.error(
            "Composition mismatch on %s: entries=%s total=%s", alloc.id, actual, alloc.total_hours,
            extra={"event_type": "phase_allocation.composition_mismatch", "phase_allocation_id": alloc.id},
        )
        raise CompositionError(expected=alloc.total_hours, actual=actual)


def record_total_change(alloc: PhaseAllocation, delta: float, kind: CompositionKind,
                        notes: str | None = None, actor: str = "system") -> None:
    """Log a signed delta on a composite allocation whose total just moved."""
    if not alloc.is_composite or abs(delta) <= _COMPOSITION_TOLERANCE:
        return
    append_entry(alloc, kind, original_hours=delta, notes=notes, actor=actor)
    check_composition(alloc)


def _seed_original(alloc: PhaseAllocation, actor: str) -> None:
    # First fold: the grant as it stood becomes the first log entry
    if alloc.is_composite:
        return
    if alloc.reallocated_from_phase_id is not None:
        append_entry(
            alloc, CompositionKind.REALLOCATION,
            reallocated_hours=alloc.total_hours,
            reallocated_from_phase_id=alloc.reallocated_from_phase_id,
            source_allocation_id=alloc.reallocated_from_allocation_id,
            notes=alloc.reallocation_notes,
            actor=actor,
        )
    else:
        append_entry(
            alloc, CompositionKind.ORIGINAL,
            original_hours=alloc.total_hours,
            source_allocation_id=alloc.id,
            actor=actor,
        )
    alloc.is_composite = True


def fold_into_composite(alloc: PhaseAllocation, hours: float, origin) -> PhaseAllocation:
    """
    Scenario B: add ``hours`` to a PENDING allocation and log the contribution.

    ``origin`` is an ``AllocationOrigin``; reallocations log reallocated_hours
    and the source phase, assignments log original_hours.
    """
    if alloc.status != PhaseApprovalStatus.PENDING:
        raise ApprovalConflictError(
            "Only a pending allocation can absorb another request",
            current_status=alloc.approval_status,
            event="merge",
        )
    _seed_original(alloc, origin.actor)
    alloc.total_hours += hours
    if origin.kind == CompositionKind.REALLOCATION:
        append_entry(
            alloc, CompositionKind.REALLOCATION,
            reallocated_hours=hours,
            reallocated_from_phase_id=origin.source_phase_id,
            source_allocation_id=origin.source_allocation_id,
            notes=origin.notes,
            actor=origin.actor,
        )
    else:
        append_entry(
            alloc, CompositionKind.ASSIGNMENT,
            original_hours=hours,
            source_allocation_id=origin.source_allocation_id,
            notes=origin.notes,
            actor=origin.actor,
        )
    check_composition(alloc)
    return alloc


# ── Scenario A: child → parent ───────────────────────────────────────────────


def merge_child_into_parent(child: PhaseAllocation, parent: PhaseAllocation,
                            actor: str = "system") -> PhaseAllocation:
    """
    Fold an approved top-up into its APPROVED parent and delete the child.

    Child weeks move to the parent; a week the parent already has is summed
    into the parent's row and goes back to PENDING for a fresh decision.
    Caller holds locks on both rows and commits.
    """
    if parent.status != PhaseApprovalStatus.APPROVED:
        raise ApprovalConflictError(
            "Parent allocation is no longer approved",
            current_status=parent.approval_status,
            event="merge",
        )
    old_total = parent.total_hours
    _seed_original(parent, actor)
    parent.total_hours += child.total_hours

    if child.is_composite:
        for entry in child.composition_entries:
            append_entry(
                parent, CompositionKind(entry.kind),
                original_hours=entry.original_hours,
                reallocated_hours=entry.reallocated_hours,
                reallocated_from_phase_id=entry.reallocated_from_phase_id,
                source_allocation_id=entry.source_allocation_id or child.id,
                notes=entry.notes,
                actor=actor,
            )
    elif child.reallocated_from_phase_id is not None:
        append_entry(
            parent, CompositionKind.MERGE,
            reallocated_hours=child.total_hours,
            reallocated_from_phase_id=child.reallocated_from_phase_id,
            source_allocation_id=child.id,
            notes=child.reallocation_notes,
            actor=actor,
        )
    else:
        append_entry(
            parent, CompositionKind.MERGE,
            original_hours=child.total_hours,
            source_allocation_id=child.id,
            actor=actor,
        )
    check_composition(parent)

    parent_weeks = {w.week_start_date: w for w in parent.weekly_allocations}
    for week in list(child.weekly_allocations):
        target = parent_weeks.get(week.week_start_date)
        if target is None:
            parent.weekly_allocations.append(week)
            write_audit(
                entity_type="weekly_allocation", entity_id=week.id,
                action="weekly_allocation.reparent", actor=actor,
                diff={"phase_allocation_id": {"old": child.id, "new": parent.id}},
            )
            continue
        before = target.effective_hours
        ledger.repropose_week(target, before + week.effective_hours)
        child.weekly_allocations.remove(week)
        write_audit(
            entity_type="weekly_allocation", entity_id=target.id,
            action="weekly_allocation.fold", actor=actor,
            diff={
                "proposed_hours": {"old": before, "new": target.proposed_hours},
                "folded_weekly_allocation_id": week.id,
            },
        )

    write_audit(
        entity_type="phase_allocation", entity_id=parent.id,
        action="phase_allocation.merge", actor=actor,
        diff={
            "total_hours": {"old": old_total, "new": parent.total_hours},
            "merged_allocation_id": child.id,
        },
    )
    logger.info(
        "Merged allocation %s into %s (+%sh)", child.id, parent.id, child.total_hours,
        extra={
            "event_type": "phase_allocation.merge",
            "phase_allocation_id": parent.id,
            "consultant_id": parent.consultant_id,
        },
    )
    db.session.delete(child)
    return parent


# ── Lapsed hours ─────────────────────────────────────────────────────────────


def forfeit_unplanned_hours(allocation_id: str, actor: str = "system") -> PhaseAllocation:
    """EXPIRED → FORFEITED: the budget shrinks to what was actually planned."""
    with allocation_transaction(alloc_key(allocation_id)):
        alloc = load_allocation_for_update(allocation_id)
        target = next_phase_status(alloc.approval_status, PhaseEvent.FORFEIT)
        committed = ledger.committed_hours(alloc)
        unplanned = alloc.total_hours - committed

        old_total = alloc.total_hours
        alloc.total_hours = committed
        alloc.forfeited_hours = round(unplanned, 2)
        alloc.approval_status = target.value
        record_total_change(alloc, -unplanned, CompositionKind.ADJUSTMENT,
                            notes="Unplanned hours forfeited", actor=actor)
        write_audit(
            entity_type="phase_allocation", entity_id=alloc.id,
            action="phase_allocation.forfeit", actor=actor,
            diff={
                "approval_status": {"old": PhaseApprovalStatus.EXPIRED.value, "new": target.value},
                "total_hours": {"old": old_total, "new": committed},
            },
        )

    logger.info(
        "Forfeited %sh on allocation %s", alloc.forfeited_hours, allocation_id,
        extra={"event_type": "phase_allocation.forfeit", "phase_allocation_id": allocation_id},
    )
    return alloc


def reallocate_unplanned_hours(
    allocation_id: str,
    target_phase_id: str,
    notes: str | None = None,
    actor: str = "system",
    today: date | None = None,
) -> tuple[PhaseAllocation, PhaseAllocation]:
    """
    Move an EXPIRED allocation's unplanned hours to another phase.

    The source goes back to APPROVED with total_hours equal to its committed
    hours; the unplanned hours become a request on the target phase for the
    same consultant (new pending top-up, or folded into a pending request).
    Returns ``(source, target_allocation)``.
    """
    source = peek_allocation(allocation_id)
    target_phase = db.session.get(Phase, target_phase_id)
    if target_phase is None:
        raise NotFoundError(resource="Phase", resource_id=target_phase_id)
    if target_phase_id == source.phase_id:
        raise ValidationError(
            "Hours must be reallocated to a different phase",
            details={"targetPhaseId": target_phase_id},
        )
    if target_phase.has_ended(today):
        raise ValidationError(
            "Target phase has already ended",
            details={"targetPhaseId": target_phase_id, "endDate": target_phase.end_date.isoformat()},
        )

    consultant_id = source.consultant_id
    with request_transaction(consultant_id, target_phase_id, alloc_key(allocation_id)) as pending:
        source = load_allocation_for_update(allocation_id)
        target_status = next_phase_status(source.approval_status, PhaseEvent.REALLOCATE)
        committed = ledger.committed_hours(source)
        unplanned = round(source.total_hours - committed, 2)
        if unplanned <= 0:
            raise ValidationError("Allocation has no unplanned hours to reallocate")

        old_total = source.total_hours
        source.total_hours = committed
        source.approval_status = target_status.value
        record_total_change(source, -(old_total - committed), CompositionKind.ADJUSTMENT,
                            notes=f"Reallocated to phase {target_phase_id}", actor=actor)

        target_alloc = ledger.request_hours(
            consultant_id,
            target_phase_id,
            unplanned,
            ledger.AllocationOrigin(
                kind=CompositionKind.REALLOCATION,
                source_phase_id=source.phase_id,
                source_allocation_id=source.id,
                notes=notes,
                actor=actor,
            ),
            pending,
        )
        write_audit(
            entity_type="phase_allocation", entity_id=source.id,
            action="phase_allocation.reallocate", actor=actor,
            diff={
                "approval_status": {"old": PhaseApprovalStatus.EXPIRED.value, "new": target_status.value},
                "total_hours": {"old": old_total, "new": committed},
                "target_allocation_id": target_alloc.id,
            },
        )

    logger.info(
        "Reallocated %sh from %s to phase %s", unplanned, allocation_id, target_phase_id,
        extra={
            "event_type": "phase_allocation.reallocate",
            "phase_allocation_id": allocation_id,
            "consultant_id": consultant_id,
            "phase_id": target_phase_id,
        },
    )
    return source, target_alloc
