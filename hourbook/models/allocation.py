"""
Hourbook
Allocation domain models.

Models:
    - PhaseAllocation:             one consultant's hour budget for one phase
    - PhaseAllocationComposition:  append-only contribution log of a composite allocation
    - WeeklyAllocation:            one (phase allocation, week) planning cell
    - HourChangeRequest:           single-stage request to adjust or shift hours

Architecture:
    Phase ──1:N──▶ PhaseAllocation ──1:N──▶ WeeklyAllocation
    PhaseAllocation ──1:N──▶ PhaseAllocationComposition
    PhaseAllocation ──N:1──▶ PhaseAllocation  (parent_allocation_id, pending top-up of an approved grant)
    PhaseAllocation ──1:N──▶ HourChangeRequest

Lifecycle states:
    PhaseAllocation:    PENDING → APPROVED | REJECTED
                        APPROVED → DELETION_PENDING → (deleted) | APPROVED
                        APPROVED → EXPIRED → FORFEITED | APPROVED (reallocated)
    WeeklyAllocation:   PENDING → APPROVED | MODIFIED | REJECTED
                        REJECTED → PENDING (resubmission only)
                        APPROVED | MODIFIED | PENDING → PENDING (consultant edit)
    HourChangeRequest:  PENDING → APPROVED | REJECTED
"""

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from hourbook.core.exceptions import ApprovalConflictError
from hourbook.models import db
from hourbook.utils.weeks import WeekKey


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Status domains ───────────────────────────────────────────────────────────


class PhaseApprovalStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELETION_PENDING = "DELETION_PENDING"
    EXPIRED = "EXPIRED"
    FORFEITED = "FORFEITED"


class PhaseEvent(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"
    REQUEST_DELETION = "request_deletion"
    APPROVE_DELETION = "approve_deletion"
    REJECT_DELETION = "reject_deletion"
    EXPIRE = "expire"
    FORFEIT = "forfeit"
    REALLOCATE = "reallocate"


class WeeklyPlanningStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    MODIFIED = "MODIFIED"
    REJECTED = "REJECTED"


class WeeklyEvent(StrEnum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"
    EDIT = "edit"
    RESUBMIT = "resubmit"


class HourChangeType(StrEnum):
    ADJUSTMENT = "ADJUSTMENT"
    SHIFT = "SHIFT"


class HourChangeStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CompositionKind(StrEnum):
    ORIGINAL = "original"
    ASSIGNMENT = "assignment"
    REALLOCATION = "reallocation"
    MERGE = "merge"
    MODIFICATION = "modification"
    ADJUSTMENT = "adjustment"


# Weekly statuses that count towards a consultant's load in capacity views.
CAPACITY_STATUSES = (
    WeeklyPlanningStatus.PENDING,
    WeeklyPlanningStatus.APPROVED,
    WeeklyPlanningStatus.MODIFIED,
)


# ── Lifecycle Transition Tables ──────────────────────────────────────────────
#
# Every (state, event) pair has an entry; None marks a forbidden transition.

_PHASE_EDGES = {
    (PhaseApprovalStatus.PENDING, PhaseEvent.APPROVE): PhaseApprovalStatus.APPROVED,
    (PhaseApprovalStatus.PENDING, PhaseEvent.REJECT): PhaseApprovalStatus.REJECTED,
    (PhaseApprovalStatus.PENDING, PhaseEvent.MODIFY): PhaseApprovalStatus.PENDING,
    (PhaseApprovalStatus.APPROVED, PhaseEvent.REQUEST_DELETION): PhaseApprovalStatus.DELETION_PENDING,
    # row is hard-deleted after this edge
    (PhaseApprovalStatus.DELETION_PENDING, PhaseEvent.APPROVE_DELETION): PhaseApprovalStatus.DELETION_PENDING,
    (PhaseApprovalStatus.DELETION_PENDING, PhaseEvent.REJECT_DELETION): PhaseApprovalStatus.APPROVED,
    (PhaseApprovalStatus.APPROVED, PhaseEvent.EXPIRE): PhaseApprovalStatus.EXPIRED,
    (PhaseApprovalStatus.EXPIRED, PhaseEvent.FORFEIT): PhaseApprovalStatus.FORFEITED,
    (PhaseApprovalStatus.EXPIRED, PhaseEvent.REALLOCATE): PhaseApprovalStatus.APPROVED,
}

PHASE_TRANSITIONS = {
    (state, event): _PHASE_EDGES.get((state, event))
    for state in PhaseApprovalStatus
    for event in PhaseEvent
}

_WEEKLY_EDGES = {
    (WeeklyPlanningStatus.PENDING, WeeklyEvent.APPROVE): WeeklyPlanningStatus.APPROVED,
    (WeeklyPlanningStatus.PENDING, WeeklyEvent.MODIFY): WeeklyPlanningStatus.MODIFIED,
    (WeeklyPlanningStatus.PENDING, WeeklyEvent.REJECT): WeeklyPlanningStatus.REJECTED,
    (WeeklyPlanningStatus.PENDING, WeeklyEvent.EDIT): WeeklyPlanningStatus.PENDING,
    (WeeklyPlanningStatus.APPROVED, WeeklyEvent.EDIT): WeeklyPlanningStatus.PENDING,
    (WeeklyPlanningStatus.MODIFIED, WeeklyEvent.EDIT): WeeklyPlanningStatus.PENDING,
    (WeeklyPlanningStatus.REJECTED, WeeklyEvent.RESUBMIT): WeeklyPlanningStatus.PENDING,
}

WEEKLY_TRANSITIONS = {
    (state, event): _WEEKLY_EDGES.get((state, event))
    for state in WeeklyPlanningStatus
    for event in WeeklyEvent
}


def next_phase_status(current, event) -> PhaseApprovalStatus:
    """Resolve a PhaseAllocation transition or raise ApprovalConflictError."""
    target = PHASE_TRANSITIONS[(PhaseApprovalStatus(current), PhaseEvent(event))]
    if target is None:
        raise ApprovalConflictError(
            f"Cannot {PhaseEvent(event).value} a phase allocation in status {current}",
            current_status=str(current),
            event=str(event),
        )
    return target


def next_weekly_status(current, event) -> WeeklyPlanningStatus:
    """Resolve a WeeklyAllocation transition or raise ApprovalConflictError."""
    target = WEEKLY_TRANSITIONS[(WeeklyPlanningStatus(current), WeeklyEvent(event))]
    if target is None:
        raise ApprovalConflictError(
            f"Cannot {WeeklyEvent(event).value} a weekly allocation in status {current}",
            current_status=str(current),
            event=str(event),
        )
    return target


# ═════════════════════════════════════════════════════════════════════════════
# 1. PhaseAllocation
# ═════════════════════════════════════════════════════════════════════════════


class PhaseAllocation(db.Model):
    """
    One consultant's hour grant for one phase.

    total_hours is the budget: the committed weekly hours underneath it
    (approved_hours, else proposed_hours) never exceed it. Several rows may
    exist for the same (consultant, phase): at most one PENDING request
    (further requests fold into it as a composite) and an APPROVED grant that
    a pending top-up points at through parent_allocation_id.
    """

    __tablename__ = "phase_allocations"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    consultant_id = db.Column(
        db.String(36), db.ForeignKey("consultants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase_id = db.Column(
        db.String(36), db.ForeignKey("phases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    total_hours = db.Column(db.Float, nullable=False)
    approval_status = db.Column(
        db.String(20), nullable=False, default=PhaseApprovalStatus.PENDING.value,
        comment="PENDING | APPROVED | REJECTED | DELETION_PENDING | EXPIRED | FORFEITED",
    )
    rejection_reason = db.Column(db.Text, nullable=True)
    modification_reason = db.Column(db.Text, nullable=True)
    modified_from_hours = db.Column(
        db.Float, nullable=True,
        comment="Requested total before an approver modified it",
    )
    deletion_reason = db.Column(db.Text, nullable=True)
    deletion_requested_by = db.Column(db.String(150), nullable=True)

    # Composite requests (several pending requests folded into one row)
    is_composite = db.Column(db.Boolean, nullable=False, default=False)

    # Pending top-up of an already approved grant for the same consultant+phase
    parent_allocation_id = db.Column(
        db.String(36), db.ForeignKey("phase_allocations.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    # Where reallocated hours came from
    reallocated_from_phase_id = db.Column(
        db.String(36), db.ForeignKey("phases.id", ondelete="SET NULL"),
        nullable=True,
    )
    reallocated_from_allocation_id = db.Column(db.String(36), nullable=True)
    reallocated_hours = db.Column(db.Float, nullable=True)
    reallocation_notes = db.Column(db.Text, nullable=True)

    forfeited_hours = db.Column(db.Float, nullable=True)

    created_by = db.Column(db.String(150), nullable=False, default="system")
    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "approval_status IN ('PENDING','APPROVED','REJECTED',"
            "'DELETION_PENDING','EXPIRED','FORFEITED')",
            name="ck_phase_allocation_status",
        ),
        db.CheckConstraint("total_hours >= 0", name="ck_phase_allocation_hours"),
        db.Index("ix_phase_allocation_pair", "consultant_id", "phase_id", "approval_status"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    consultant = db.relationship("Consultant")
    phase = db.relationship(
        "Phase", foreign_keys=[phase_id],
        backref=db.backref("allocations", lazy="dynamic", cascade="all, delete-orphan"),
    )
    reallocated_from_phase = db.relationship("Phase", foreign_keys=[reallocated_from_phase_id])
    parent = db.relationship("PhaseAllocation", remote_side=[id], foreign_keys=[parent_allocation_id])
    weekly_allocations = db.relationship(
        "WeeklyAllocation", back_populates="phase_allocation",
        cascade="all, delete-orphan", order_by="WeeklyAllocation.week_start_date",
    )
    composition_entries = db.relationship(
        "PhaseAllocationComposition", back_populates="phase_allocation",
        cascade="all, delete-orphan", order_by="PhaseAllocationComposition.sequence",
    )
    hour_change_requests = db.relationship(
        "HourChangeRequest", back_populates="phase_allocation",
        cascade="all, delete-orphan", lazy="dynamic",
    )

    @property
    def status(self) -> PhaseApprovalStatus:
        return PhaseApprovalStatus(self.approval_status)

    def composition_total(self) -> float:
        return sum(entry.contributed_hours for entry in self.composition_entries)

    def to_dict(self, include_weeks=False):
        result = {
            "id": self.id,
            "consultantId": self.consultant_id,
            "phaseId": self.phase_id,
            "totalHours": self.total_hours,
            "approvalStatus": self.approval_status,
            "rejectionReason": self.rejection_reason,
            "modificationReason": self.modification_reason,
            "modifiedFromHours": self.modified_from_hours,
            "deletionReason": self.deletion_reason,
            "isComposite": self.is_composite,
            "compositionMetadata": [e.to_dict() for e in self.composition_entries],
            "parentAllocationId": self.parent_allocation_id,
            "reallocationSource": None,
            "forfeitedHours": self.forfeited_hours,
            "approvedBy": self.approved_by,
            "approvedAt": _iso(self.approved_at),
            "createdAt": _iso(self.created_at),
        }
        if self.reallocated_from_phase_id or self.reallocated_hours is not None:
            result["reallocationSource"] = {
                "reallocatedFromPhaseId": self.reallocated_from_phase_id,
                "reallocatedFromAllocationId": self.reallocated_from_allocation_id,
                "reallocatedHours": self.reallocated_hours,
                "notes": self.reallocation_notes,
            }
        if include_weeks:
            result["weeklyAllocations"] = [w.to_dict() for w in self.weekly_allocations]
        return result

    def __repr__(self):
        return f"<PhaseAllocation {self.id} {self.total_hours}h {self.approval_status}>"


class PhaseAllocationComposition(db.Model):
    """
    Append-only contribution log of a composite PhaseAllocation.

    Entries are never updated. For a composite allocation the contributions
    (original_hours, else reallocated_hours) add up to total_hours; a
    modification or adjustment is logged as a signed delta entry.
    """

    __tablename__ = "phase_allocation_compositions"

    id = db.Column(db.Integer, primary_key=True)
    phase_allocation_id = db.Column(
        db.String(36), db.ForeignKey("phase_allocations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    kind = db.Column(
        db.String(20), nullable=False,
        comment="original | assignment | reallocation | merge | modification | adjustment",
    )
    original_hours = db.Column(db.Float, nullable=True)
    reallocated_hours = db.Column(db.Float, nullable=True)
    reallocated_from_phase_id = db.Column(db.String(36), nullable=True)
    source_allocation_id = db.Column(db.String(36), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(150), nullable=False, default="system")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("phase_allocation_id", "sequence", name="uq_composition_sequence"),
    )

    phase_allocation = db.relationship("PhaseAllocation", back_populates="composition_entries")

    @property
    def contributed_hours(self) -> float:
        if self.original_hours is not None:
            return self.original_hours
        return self.reallocated_hours or 0.0

    def to_dict(self):
        return {
            "kind": self.kind,
            "originalHours": self.original_hours,
            "reallocatedHours": self.reallocated_hours,
            "reallocatedFromPhaseId": self.reallocated_from_phase_id,
            "sourceAllocationId": self.source_allocation_id,
            "notes": self.notes,
            "timestamp": _iso(self.timestamp),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 2. WeeklyAllocation
# ═════════════════════════════════════════════════════════════════════════════


class WeeklyAllocation(db.Model):
    """
    One week of planned hours against a PhaseAllocation.

    week_start_date (always a Monday) identifies the week; week_number and
    year are derived ISO values kept for display. consultant_id is copied from
    the parent so capacity queries do not need the join.
    """

    __tablename__ = "weekly_allocations"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    phase_allocation_id = db.Column(
        db.String(36), db.ForeignKey("phase_allocations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    consultant_id = db.Column(
        db.String(36), db.ForeignKey("consultants.id", ondelete="CASCADE"),
        nullable=False,
    )

    week_start_date = db.Column(db.Date, nullable=False)
    week_end_date = db.Column(db.Date, nullable=False)
    week_number = db.Column(db.Integer, nullable=False, comment="ISO week, display only")
    year = db.Column(db.Integer, nullable=False, comment="ISO year, display only")

    proposed_hours = db.Column(db.Float, nullable=True)
    approved_hours = db.Column(db.Float, nullable=True)
    planning_status = db.Column(
        db.String(20), nullable=False, default=WeeklyPlanningStatus.PENDING.value,
        comment="PENDING | APPROVED | MODIFIED | REJECTED",
    )
    rejection_reason = db.Column(db.Text, nullable=True)
    consultant_description = db.Column(db.Text, nullable=True)
    submission_batch_id = db.Column(
        db.String(36), nullable=True, index=True,
        comment="Shared by every week written in one consultant submission",
    )

    approved_by = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint(
            "phase_allocation_id", "week_start_date", name="uq_weekly_allocation_week",
        ),
        db.CheckConstraint(
            "planning_status IN ('PENDING','APPROVED','MODIFIED','REJECTED')",
            name="ck_weekly_allocation_status",
        ),
        db.Index("ix_weekly_allocation_consultant_week", "consultant_id", "week_start_date"),
    )

    phase_allocation = db.relationship("PhaseAllocation", back_populates="weekly_allocations")

    @property
    def status(self) -> WeeklyPlanningStatus:
        return WeeklyPlanningStatus(self.planning_status)

    @property
    def effective_hours(self) -> float:
        """Hours this week commits: approved if decided, else proposed."""
        if self.approved_hours is not None:
            return self.approved_hours
        if self.proposed_hours is not None:
            return self.proposed_hours
        return 0.0

    @property
    def key(self) -> WeekKey:
        return WeekKey(self.phase_allocation_id, self.week_start_date)

    def to_dict(self):
        return {
            "id": self.id,
            "phaseAllocationId": self.phase_allocation_id,
            "consultantId": self.consultant_id,
            "weekStartDate": _iso(self.week_start_date),
            "weekEndDate": _iso(self.week_end_date),
            "weekNumber": self.week_number,
            "year": self.year,
            "proposedHours": self.proposed_hours,
            "approvedHours": self.approved_hours,
            "planningStatus": self.planning_status,
            "rejectionReason": self.rejection_reason,
            "consultantDescription": self.consultant_description,
            "submissionBatchId": self.submission_batch_id,
            "approvedBy": self.approved_by,
            "approvedAt": _iso(self.approved_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WeeklyAllocation {self.week_start_date} {self.effective_hours}h {self.planning_status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. HourChangeRequest
# ═════════════════════════════════════════════════════════════════════════════


class HourChangeRequest(db.Model):
    """
    Consultant request to change an approved allocation outside the weekly ladder.

    ADJUSTMENT: requested_hours is a signed delta applied to total_hours.
    SHIFT:      requested_hours (positive) move from from_week_start to to_week_start.
    """

    __tablename__ = "hour_change_requests"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    phase_allocation_id = db.Column(
        db.String(36), db.ForeignKey("phase_allocations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    requester_id = db.Column(
        db.String(36), db.ForeignKey("consultants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    change_type = db.Column(db.String(20), nullable=False, comment="ADJUSTMENT | SHIFT")
    requested_hours = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(500), nullable=False)
    from_week_start = db.Column(db.Date, nullable=True)
    to_week_start = db.Column(db.Date, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=HourChangeStatus.PENDING.value,
        comment="PENDING | APPROVED | REJECTED",
    )
    rejection_reason = db.Column(db.Text, nullable=True)
    decided_by = db.Column(db.String(150), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("change_type IN ('ADJUSTMENT','SHIFT')", name="ck_hour_change_type"),
        db.CheckConstraint(
            "status IN ('PENDING','APPROVED','REJECTED')", name="ck_hour_change_status",
        ),
    )

    phase_allocation = db.relationship("PhaseAllocation", back_populates="hour_change_requests")

    def to_dict(self):
        return {
            "id": self.id,
            "phaseAllocationId": self.phase_allocation_id,
            "requesterId": self.requester_id,
            "changeType": self.change_type,
            "requestedHours": self.requested_hours,
            "reason": self.reason,
            "fromWeekStartDate": _iso(self.from_week_start),
            "toWeekStartDate": _iso(self.to_week_start),
            "status": self.status,
            "rejectionReason": self.rejection_reason,
            "decidedBy": self.decided_by,
            "decidedAt": _iso(self.decided_at),
            "createdAt": _iso(self.created_at),
        }
