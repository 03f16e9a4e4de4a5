"""
Hourbook
Planning container models.

Models:
    - Consultant:  identity of a person whose hours are allocated
    - Project:     top-level engagement
    - Phase:       dated slice of a project that receives PhaseAllocations
    - Sprint:      ordered two-week block inside a project, optionally tied to a phase

Architecture:
    Project ──1:N──▶ Phase ──1:N──▶ PhaseAllocation (see allocation.py)
    Project ──1:N──▶ Sprint
    Phase   ──1:N──▶ Sprint

These rows are created by the surrounding project/sprint tooling; the engine
only reads them.
"""

import uuid
from datetime import date, datetime, timezone

from hourbook.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class Consultant(db.Model):
    """A person whose weekly hours are planned and approved."""

    __tablename__ = "consultants"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
        }

    def __repr__(self):
        return f"<Consultant {self.email}>"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    phases = db.relationship(
        "Phase", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="Phase.start_date",
    )
    sprints = db.relationship(
        "Sprint", backref="project", lazy="dynamic",
        cascade="all, delete-orphan", order_by="Sprint.sprint_number",
    )

    def to_dict(self):
        return {"id": self.id, "title": self.title}

    def __repr__(self):
        return f"<Project {self.title}>"


class Phase(db.Model):
    """
    Dated slice of a project. Phase end_date drives the expiry job:
    once it has passed, APPROVED allocations with unplanned hours expire.
    """

    __tablename__ = "phases"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("start_date <= end_date", name="ck_phase_date_range"),
    )

    sprints = db.relationship(
        "Sprint", backref="phase", lazy="select",
        order_by="Sprint.sprint_number",
    )

    def has_ended(self, today: date | None = None) -> bool:
        today = today or date.today()
        return self.end_date < today

    def to_dict(self):
        return {
            "id": self.id,
            "projectId": self.project_id,
            "name": self.name,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }

    def __repr__(self):
        return f"<Phase {self.name} {self.start_date}..{self.end_date}>"


class Sprint(db.Model):
    __tablename__ = "sprints"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase_id = db.Column(
        db.String(36), db.ForeignKey("phases.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    sprint_number = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("project_id", "sprint_number", name="uq_sprint_project_number"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "projectId": self.project_id,
            "phaseId": self.phase_id,
            "sprintNumber": self.sprint_number,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }
