"""
Capacity Projector: read-only service layer.

Aggregates committed weekly hours (approved, else proposed) per consultant
per canonical Monday and labels them with a threshold scale.

Two named scales are available:

    DETAIL  available ≤15 · partially-busy ≤30 · busy ≤40 · overloaded
    FLEET   available ≤30 · full ≤40 · over

Rows are matched to Mondays by date distance, never by (week_number, year):
each row lands on the single nearest Monday within the tolerance, so no row
is counted twice or dropped inside one read. No locks are taken.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from flask import current_app

from hourbook.core.exceptions import NotFoundError, ValidationError
from hourbook.models import db
from hourbook.models.allocation import (
    CAPACITY_STATUSES,
    PhaseAllocation,
    PhaseApprovalStatus,
    WeeklyAllocation,
)
from hourbook.models.planning import Consultant, Phase, Project
from hourbook.utils.weeks import iso_week, mondays_between, nearest_monday, week_end

logger = logging.getLogger(__name__)


# ── Threshold scales ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ThresholdScale:
    """Ordered (inclusive upper bound, label) tiers plus the label above the last bound."""

    name: str
    tiers: tuple[tuple[float, str], ...]
    overflow_label: str

    def classify(self, hours: float) -> str:
        for bound, label in self.tiers:
            if hours <= bound:
                return label
        return self.overflow_label

    @property
    def labels(self) -> list[str]:
        return [label for _, label in self.tiers] + [self.overflow_label]


DETAIL = ThresholdScale(
    name="detail",
    tiers=((15, "available"), (30, "partially-busy"), (40, "busy")),
    overflow_label="overloaded",
)
FLEET = ThresholdScale(
    name="fleet",
    tiers=((30, "available"), (40, "full")),
    overflow_label="over",
)

SCALES = {DETAIL.name: DETAIL, FLEET.name: FLEET}


def get_scale(name: str | None, default: ThresholdScale = DETAIL) -> ThresholdScale:
    if not name:
        return default
    scale = SCALES.get(name.lower())
    if scale is None:
        raise ValidationError(
            f"Unknown threshold scale {name!r}",
            details={"scale": name, "allowed": sorted(SCALES)},
        )
    return scale


def classify(hours: float, scale: ThresholdScale = DETAIL) -> str:
    return scale.classify(hours)


def trend(weekly_totals: list[float]) -> str:
    """Compare first-half and second-half averages with a ±10% band."""
    if len(weekly_totals) < 2:
        return "stable"
    half = len(weekly_totals) // 2
    first, second = weekly_totals[:half], weekly_totals[half:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if second_avg > first_avg * 1.1:
        return "up"
    if second_avg < first_avg * 0.9:
        return "down"
    return "stable"


# ── Snapshot reads ───────────────────────────────────────────────────────────


def _capacity_per_week() -> float:
    return float(current_app.config.get("CAPACITY_HOURS_PER_WEEK", 40))


def _tolerance_days() -> int:
    return int(current_app.config.get("WEEK_MATCH_TOLERANCE_DAYS", 7))


def _window(start_date: date, end_date: date) -> list[date]:
    if start_date is None or end_date is None:
        raise ValidationError("startDate and endDate are required")
    if start_date > end_date:
        raise ValidationError(
            "startDate must not be after endDate",
            details={"startDate": start_date.isoformat(), "endDate": end_date.isoformat()},
        )
    return mondays_between(start_date, end_date)


def _committed_rows(consultant_ids, mondays, exclude_project_id=None):
    """One query: (week, project_id, project_title) rows near the window."""
    if not mondays:
        return []
    slack = timedelta(days=_tolerance_days())
    q = (
        db.session.query(WeeklyAllocation, Project.id, Project.title)
        .join(PhaseAllocation, WeeklyAllocation.phase_allocation_id == PhaseAllocation.id)
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .join(Project, Phase.project_id == Project.id)
        .filter(
            WeeklyAllocation.consultant_id.in_(consultant_ids),
            WeeklyAllocation.planning_status.in_([s.value for s in CAPACITY_STATUSES]),
            WeeklyAllocation.week_start_date > mondays[0] - slack,
            WeeklyAllocation.week_start_date < mondays[-1] + slack,
        )
    )
    if exclude_project_id:
        q = q.filter(Project.id != exclude_project_id)
    return q.all()


def _breakdown(rows, mondays, scale, capacity, tolerance) -> list[dict]:
    buckets = {m: {"total": 0.0, "projects": {}} for m in mondays}
    for week, project_id, project_title in rows:
        monday = nearest_monday(week.week_start_date, mondays, tolerance)
        if monday is None:
            continue
        bucket = buckets[monday]
        hours = week.effective_hours
        bucket["total"] += hours
        project = bucket["projects"].setdefault(
            project_id, {"projectId": project_id, "projectTitle": project_title, "hours": 0.0},
        )
        project["hours"] += hours

    result = []
    for monday in mondays:
        bucket = buckets[monday]
        total = round(bucket["total"], 2)
        iso_year, iso_number = iso_week(monday)
        result.append({
            "weekStart": monday.isoformat(),
            "weekEnd": week_end(monday).isoformat(),
            "weekNumber": iso_number,
            "year": iso_year,
            "totalHours": total,
            "availableHours": max(0.0, round(capacity - total, 2)),
            "status": scale.classify(total),
            "projects": list(bucket["projects"].values()),
        })
    return result


def weekly_breakdown(
    consultant_id: str,
    start_date: date,
    end_date: date,
    scale: ThresholdScale = DETAIL,
    exclude_project_id: str | None = None,
) -> list[dict]:
    """One row per canonical Monday of the window for one consultant."""
    mondays = _window(start_date, end_date)
    rows = _committed_rows([consultant_id], mondays, exclude_project_id)
    return _breakdown(rows, mondays, scale, _capacity_per_week(), _tolerance_days())


def _approved_allocation_hours(consultant_id, start_date, end_date, exclude_project_id=None) -> float:
    q = (
        db.session.query(db.func.coalesce(db.func.sum(PhaseAllocation.total_hours), 0.0))
        .join(Phase, PhaseAllocation.phase_id == Phase.id)
        .filter(
            PhaseAllocation.consultant_id == consultant_id,
            PhaseAllocation.approval_status == PhaseApprovalStatus.APPROVED.value,
            Phase.start_date <= end_date,
            Phase.end_date >= start_date,
        )
    )
    if exclude_project_id:
        q = q.filter(Phase.project_id != exclude_project_id)
    return float(q.scalar() or 0.0)


def _summarize(consultant, breakdown, allocated_hours, scale, capacity) -> dict:
    totals = [w["totalHours"] for w in breakdown]
    total = sum(totals)
    week_count = len(breakdown)
    average = total / week_count if week_count else 0.0
    return {
        "consultant": consultant.to_dict(),
        "allocatedHours": round(allocated_hours, 2),
        "overallStatus": scale.classify(average),
        "averageHoursPerWeek": round(average, 1),
        "totalAllocatedHours": round(total, 2),
        "totalAvailable": max(0.0, round(week_count * capacity - total, 2)),
        "trend": trend(totals),
        "weeklyBreakdown": breakdown,
    }


def consultant_availability(
    start_date: date,
    end_date: date,
    scale: ThresholdScale = DETAIL,
    exclude_project_id: str | None = None,
    consultant_id: str | None = None,
) -> list[dict]:
    """Availability summary for every active consultant (or just one)."""
    mondays = _window(start_date, end_date)
    capacity = _capacity_per_week()
    tolerance = _tolerance_days()

    if consultant_id:
        consultant = db.session.get(Consultant, consultant_id)
        if consultant is None:
            raise NotFoundError(resource="Consultant", resource_id=consultant_id)
        consultants = [consultant]
    else:
        consultants = Consultant.query.filter_by(is_active=True).order_by(Consultant.name).all()

    result = []
    for consultant in consultants:
        rows = _committed_rows([consultant.id], mondays, exclude_project_id)
        breakdown = _breakdown(rows, mondays, scale, capacity, tolerance)
        allocated = _approved_allocation_hours(consultant.id, start_date, end_date, exclude_project_id)
        result.append(_summarize(consultant, breakdown, allocated, scale, capacity))

    logger.debug(
        "Availability computed for %d consultants over %d weeks", len(result), len(mondays),
        extra={"event_type": "capacity.availability"},
    )
    return result


def fleet_summary(start_date: date, end_date: date, scale: ThresholdScale = FLEET) -> dict:
    """
    Tier counts across the active fleet for the first week of the window,
    plus utilization over the whole window and the fleet trend.
    """
    mondays = _window(start_date, end_date)
    capacity = _capacity_per_week()
    tolerance = _tolerance_days()
    consultants = Consultant.query.filter_by(is_active=True).all()

    counts = {label: 0 for label in scale.labels}
    fleet_totals = [0.0] * len(mondays)
    total_allocated = 0.0
    for consultant in consultants:
        rows = _committed_rows([consultant.id], mondays)
        breakdown = _breakdown(rows, mondays, scale, capacity, tolerance)
        if breakdown:
            counts[breakdown[0]["status"]] += 1
        for idx, week in enumerate(breakdown):
            fleet_totals[idx] += week["totalHours"]
            total_allocated += week["totalHours"]

    total_capacity = len(consultants) * capacity * len(mondays)
    utilization = round(total_allocated / total_capacity * 100) if total_capacity else 0
    return {
        "scale": scale.name,
        "weekCount": len(mondays),
        "consultantCount": len(consultants),
        "counts": counts,
        "totalAllocatedHours": round(total_allocated, 2),
        "utilizationPercentage": utilization,
        "trend": trend(fleet_totals),
    }
