"""
Capacity projector tests.

Covers:
  - Threshold scales (detail / fleet) and classification boundaries
  - Trend over first-half vs second-half averages
  - Nearest-Monday week matching, incl. the ISO year boundary
  - Weekly breakdown: per-project split, excluded projects, rejected weeks
  - Consultant availability summary and fleet summary
"""

from datetime import date, timedelta

import pytest

from hourbook.core.exceptions import NotFoundError, ValidationError
from hourbook.services import approval_state_machine as asm
from hourbook.services import capacity_projector as projector
from hourbook.utils.weeks import mondays_between, nearest_monday

MONDAY = date(2026, 3, 2)
NEXT_MONDAY = MONDAY + timedelta(days=7)
WINDOW_END = NEXT_MONDAY + timedelta(days=6)
APPROVER = "lead@example.com"


@pytest.fixture()
def spring_phase(make_phase):
    return make_phase(start=date(2026, 1, 5), end=date(2026, 6, 28), name="Spring")


@pytest.fixture()
def second_project_phase(make_project, make_phase):
    other = make_project("Finance Carve-out")
    return make_phase(start=date(2026, 1, 5), end=date(2026, 6, 28), name="Carve-out", owner=other)


@pytest.fixture()
def two_grants(consultant, spring_phase, second_project_phase, approve):
    return (
        approve(consultant.id, spring_phase.id, 40),
        approve(consultant.id, second_project_phase.id, 40),
    )


# ═════════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ═════════════════════════════════════════════════════════════════════════


class TestClassification:
    @pytest.mark.parametrize("hours, label", [
        (0, "available"),
        (15, "available"),
        (15.5, "partially-busy"),
        (30, "partially-busy"),
        (40, "busy"),
        (41, "overloaded"),
    ])
    def test_detail_scale(self, hours, label):
        assert projector.classify(hours, projector.DETAIL) == label

    @pytest.mark.parametrize("hours, label", [
        (30, "available"),
        (35, "full"),
        (40, "full"),
        (41, "over"),
    ])
    def test_fleet_scale(self, hours, label):
        assert projector.classify(hours, projector.FLEET) == label

    def test_get_scale_by_name(self):
        assert projector.get_scale("FLEET") is projector.FLEET
        assert projector.get_scale(None) is projector.DETAIL

    def test_unknown_scale(self):
        with pytest.raises(ValidationError):
            projector.get_scale("heatmap")


class TestTrend:
    def test_single_week_is_stable(self):
        assert projector.trend([25]) == "stable"

    def test_rising(self):
        assert projector.trend([10, 10, 20, 20]) == "up"

    def test_falling(self):
        assert projector.trend([20, 20, 10, 10]) == "down"

    def test_inside_ten_percent_band(self):
        assert projector.trend([10, 11]) == "stable"

    def test_odd_length_puts_middle_week_in_second_half(self):
        # halves are [10] and [10, 40]
        assert projector.trend([10, 10, 40]) == "up"


class TestWeekMatching:
    def test_row_lands_on_closest_monday(self):
        mondays = [MONDAY, NEXT_MONDAY]
        assert nearest_monday(MONDAY + timedelta(days=3), mondays) == MONDAY
        assert nearest_monday(MONDAY + timedelta(days=6), mondays) == NEXT_MONDAY

    def test_row_outside_tolerance_is_dropped(self):
        assert nearest_monday(MONDAY - timedelta(days=10), [MONDAY]) is None

    def test_window_mondays_start_from_week_of_start_date(self):
        assert mondays_between(MONDAY + timedelta(days=2), WINDOW_END) == [MONDAY, NEXT_MONDAY]


# ═════════════════════════════════════════════════════════════════════════
# SNAPSHOT READS
# ═════════════════════════════════════════════════════════════════════════


class TestWeeklyBreakdown:
    def test_overloaded_week_across_projects(self, consultant, two_grants, plan_week):
        first, second = two_grants
        plan_week(first.id, MONDAY, 25)
        plan_week(second.id, MONDAY, 16)

        rows = projector.weekly_breakdown(consultant.id, MONDAY, WINDOW_END)

        assert [r["weekStart"] for r in rows] == [MONDAY.isoformat(), NEXT_MONDAY.isoformat()]
        assert rows[0]["totalHours"] == 41
        assert rows[0]["status"] == "overloaded"
        assert rows[0]["availableHours"] == 0
        assert sorted(p["hours"] for p in rows[0]["projects"]) == [16, 25]
        assert rows[1]["totalHours"] == 0
        assert rows[1]["status"] == "available"

    def test_fleet_scale_labels_same_week_over(self, consultant, two_grants, plan_week):
        first, second = two_grants
        plan_week(first.id, MONDAY, 25)
        plan_week(second.id, MONDAY, 16)
        rows = projector.weekly_breakdown(consultant.id, MONDAY, WINDOW_END, projector.FLEET)
        assert rows[0]["status"] == "over"

    def test_excluded_project_is_left_out(self, consultant, two_grants, plan_week,
                                          second_project_phase):
        first, second = two_grants
        plan_week(first.id, MONDAY, 25)
        plan_week(second.id, MONDAY, 16)
        rows = projector.weekly_breakdown(
            consultant.id, MONDAY, WINDOW_END,
            exclude_project_id=second_project_phase.project_id,
        )
        assert rows[0]["totalHours"] == 25

    def test_approved_hours_win_and_rejected_weeks_do_not_count(self, consultant, two_grants,
                                                                plan_week):
        first, second = two_grants
        modified = plan_week(first.id, MONDAY, 20)
        asm.modify_weekly(modified.id, 12, APPROVER)
        rejected = plan_week(second.id, MONDAY, 10)
        asm.reject_weekly(rejected.id, "Not needed this week", APPROVER)

        rows = projector.weekly_breakdown(consultant.id, MONDAY, WINDOW_END)
        assert rows[0]["totalHours"] == 12

    def test_year_boundary_week_counted_once(self, consultant, spring_phase, approve, plan_week):
        alloc = approve(consultant.id, spring_phase.id, 40)
        plan_week(alloc.id, date(2024, 12, 30), 20)

        rows = projector.weekly_breakdown(consultant.id, date(2024, 12, 23), date(2025, 1, 12))

        assert [r["totalHours"] for r in rows] == [0, 20, 0]
        assert (rows[1]["weekNumber"], rows[1]["year"]) == (1, 2025)

    def test_start_after_end(self, consultant):
        with pytest.raises(ValidationError):
            projector.weekly_breakdown(consultant.id, NEXT_MONDAY, MONDAY)


class TestConsultantAvailability:
    def test_summary_fields(self, consultant, spring_phase, approve, plan_week):
        alloc = approve(consultant.id, spring_phase.id, 40)
        plan_week(alloc.id, MONDAY, 10)
        plan_week(alloc.id, NEXT_MONDAY, 30)

        (summary,) = projector.consultant_availability(MONDAY, WINDOW_END)

        assert summary["consultant"]["id"] == consultant.id
        assert summary["allocatedHours"] == 40
        assert summary["totalAllocatedHours"] == 40
        assert summary["averageHoursPerWeek"] == 20.0
        assert summary["overallStatus"] == "partially-busy"
        assert summary["totalAvailable"] == 40
        assert summary["trend"] == "up"
        assert len(summary["weeklyBreakdown"]) == 2

    def test_inactive_consultants_skipped(self, consultant, make_consultant):
        make_consultant("Gone Away", is_active=False)
        result = projector.consultant_availability(MONDAY, WINDOW_END)
        assert [s["consultant"]["id"] for s in result] == [consultant.id]

    def test_single_consultant_lookup(self, consultant, make_consultant):
        make_consultant()
        result = projector.consultant_availability(MONDAY, WINDOW_END, consultant_id=consultant.id)
        assert len(result) == 1

    def test_unknown_consultant(self):
        with pytest.raises(NotFoundError):
            projector.consultant_availability(MONDAY, WINDOW_END, consultant_id="nobody")


class TestFleetSummary:
    def test_counts_and_utilization(self, consultant, make_consultant, two_grants, plan_week):
        make_consultant()
        first, second = two_grants
        plan_week(first.id, MONDAY, 25)
        plan_week(second.id, MONDAY, 16)

        summary = projector.fleet_summary(MONDAY, WINDOW_END)

        assert summary["scale"] == "fleet"
        assert summary["consultantCount"] == 2
        assert summary["weekCount"] == 2
        assert summary["counts"] == {"available": 1, "full": 0, "over": 1}
        assert summary["totalAllocatedHours"] == 41
        # 41h of 2 consultants x 2 weeks x 40h
        assert summary["utilizationPercentage"] == 26
        assert summary["trend"] == "down"
