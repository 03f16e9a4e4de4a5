"""
Hourbook
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for allocation lifecycle events.
"""

import json
from datetime import UTC, datetime

from hourbook.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "phase_allocation", "weekly_allocation", "hour_change_request",
}

AUDIT_ACTIONS = {
    # Phase allocation lifecycle
    "phase_allocation.approve",
    "phase_allocation.reject",
    "phase_allocation.modify",
    "phase_allocation.request_deletion",
    "phase_allocation.delete",
    "phase_allocation.reject_deletion",
    "phase_allocation.merge",
    "phase_allocation.expire",
    "phase_allocation.forfeit",
    "phase_allocation.reallocate",
    # Weekly allocation
    "weekly_allocation.approve",
    "weekly_allocation.modify",
    "weekly_allocation.reject",
    "weekly_allocation.delete",
    "weekly_allocation.reparent",
    "weekly_allocation.fold",
    # Hour change requests
    "hour_change_request.approve",
    "hour_change_request.reject",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``diff_json`` carries an old→new snapshot of the
    fields that changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference; no FK so rows outlive deleted allocations
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="phase_allocation | weekly_allocation | hour_change_request",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="phase_allocation.merge | weekly_allocation.reparent | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.
    """
    if entity_type not in AUDIT_ENTITY_TYPES or action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit event {entity_type}/{action}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
