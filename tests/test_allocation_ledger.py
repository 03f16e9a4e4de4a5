"""
Allocation ledger tests.

Covers:
  - Weekly submission: upsert, Monday normalisation, budget rule, idempotent resubmission
  - Rejected weeks: clearRejection gate
  - Weekly plans: shared submission batch, whole-plan budget check
  - Allocation requests: new pending, top-up of an approved grant, validation
  - Request locking: folds and pending-row decisions wait for each other
"""

import threading
import time
from datetime import date, timedelta

import pytest

from hourbook.core.exceptions import (
    ApprovalConflictError,
    BudgetExceededError,
    NotFoundError,
    ValidationError,
)
from hourbook.models import db
from hourbook.models.allocation import PhaseAllocation, WeeklyAllocation
from hourbook.services import allocation_ledger as ledger
from hourbook.services import approval_state_machine as asm
from hourbook.services.locking import alloc_key, locked, pair_key, request_transaction

MONDAY = date(2026, 3, 2)
NEXT_MONDAY = MONDAY + timedelta(days=7)


# ═════════════════════════════════════════════════════════════════════════
# WEEKLY SUBMISSIONS
# ═════════════════════════════════════════════════════════════════════════


class TestSubmitWeeklyHours:
    def test_creates_pending_week(self, approved_allocation):
        week = ledger.submit_weekly_hours(approved_allocation.id, MONDAY, 16)
        assert week.planning_status == "PENDING"
        assert week.proposed_hours == 16
        assert week.approved_hours is None
        assert week.week_end_date == MONDAY + timedelta(days=6)
        assert week.consultant_id == approved_allocation.consultant_id

    def test_mid_week_date_is_normalised_to_monday(self, approved_allocation):
        week = ledger.submit_weekly_hours(approved_allocation.id, MONDAY + timedelta(days=3), 8)
        assert week.week_start_date == MONDAY

    def test_upsert_keeps_one_row_per_week(self, approved_allocation, plan_week):
        plan_week(approved_allocation.id, MONDAY, 8)
        plan_week(approved_allocation.id, MONDAY, 12)
        rows = WeeklyAllocation.query.filter_by(phase_allocation_id=approved_allocation.id).all()
        assert len(rows) == 1
        assert rows[0].proposed_hours == 12

    def test_budget_excess_reports_excess_hours(self, approved_allocation, plan_week):
        plan_week(approved_allocation.id, MONDAY, 20)
        with pytest.raises(BudgetExceededError) as exc:
            plan_week(approved_allocation.id, NEXT_MONDAY, 22)
        assert exc.value.excess_hours == 2
        assert exc.value.to_dict()["excessHours"] == 2
        # nothing was written for the refused week
        assert WeeklyAllocation.query.filter_by(week_start_date=NEXT_MONDAY).count() == 0

    def test_budget_can_be_filled_exactly(self, approved_allocation, plan_week):
        plan_week(approved_allocation.id, MONDAY, 20)
        plan_week(approved_allocation.id, NEXT_MONDAY, 20)
        alloc = db.session.get(PhaseAllocation, approved_allocation.id)
        assert ledger.remaining_hours(alloc) == 0

    def test_replacing_a_week_substitutes_its_hours(self, approved_allocation, plan_week):
        plan_week(approved_allocation.id, MONDAY, 30)
        # 30 → 40 on the same week is within budget because 30 is replaced, not added
        week = plan_week(approved_allocation.id, MONDAY, 40)
        assert week.proposed_hours == 40

    def test_committed_hours_prefer_approved_over_proposed(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 20)
        asm.modify_weekly(week.id, 10, "lead@example.com")
        # 10 approved + 30 proposed fits the 40h budget
        plan_week(approved_allocation.id, NEXT_MONDAY, 30)
        alloc = db.session.get(PhaseAllocation, approved_allocation.id)
        assert ledger.committed_hours(alloc) == 40

    def test_negative_hours_rejected(self, approved_allocation, plan_week):
        with pytest.raises(ValidationError):
            plan_week(approved_allocation.id, MONDAY, -1)

    @pytest.mark.parametrize("hours", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_hours_rejected(self, approved_allocation, plan_week, hours):
        with pytest.raises(ValidationError):
            plan_week(approved_allocation.id, MONDAY, hours)
        assert WeeklyAllocation.query.count() == 0

    def test_zero_hours_allowed(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 0)
        assert week.proposed_hours == 0

    def test_pending_parent_refused(self, consultant, phase, plan_week):
        alloc = ledger.create_or_merge_allocation(consultant.id, phase.id, 40)
        with pytest.raises(ApprovalConflictError) as exc:
            plan_week(alloc.id, MONDAY, 8)
        assert exc.value.current_status == "PENDING"

    def test_unknown_allocation(self, plan_week):
        with pytest.raises(NotFoundError):
            plan_week("missing-id", MONDAY, 8)


class TestResubmission:
    def test_unchanged_resubmission_keeps_decision(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 10)
        asm.approve_weekly(week.id, "lead@example.com")
        again = plan_week(approved_allocation.id, MONDAY, 10)
        assert again.planning_status == "APPROVED"
        assert again.approved_hours == 10

    def test_changed_hours_reset_approved_week_to_pending(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 10)
        asm.approve_weekly(week.id, "lead@example.com")
        edited = plan_week(approved_allocation.id, MONDAY, 12)
        assert edited.planning_status == "PENDING"
        assert edited.approved_hours is None
        assert edited.approved_by is None

    def test_rejected_week_needs_clear_rejection(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 10)
        asm.reject_weekly(week.id, "Too many hours this week", "lead@example.com")
        with pytest.raises(ApprovalConflictError):
            plan_week(approved_allocation.id, MONDAY, 8)

        resubmitted = plan_week(approved_allocation.id, MONDAY, 8, clear_rejection=True)
        assert resubmitted.planning_status == "PENDING"
        assert resubmitted.rejection_reason is None
        assert resubmitted.proposed_hours == 8

    def test_rejected_week_resubmitted_with_same_hours(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 10)
        asm.reject_weekly(week.id, "Please re-check this week", "lead@example.com")
        resubmitted = plan_week(approved_allocation.id, MONDAY, 10, clear_rejection=True)
        assert resubmitted.planning_status == "PENDING"

    def test_consultant_description_stored(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, MONDAY, 6, consultant_description="Data migration")
        assert week.consultant_description == "Data migration"


class TestWeekIdentity:
    def test_year_boundary_week_keeps_calendar_monday(self, approved_allocation, plan_week):
        week = plan_week(approved_allocation.id, date(2024, 12, 30), 8)
        assert week.week_start_date == date(2024, 12, 30)
        assert (week.week_number, week.year) == (1, 2025)
        assert week.key == (approved_allocation.id, date(2024, 12, 30))


# ═════════════════════════════════════════════════════════════════════════
# WEEKLY PLANS
# ═════════════════════════════════════════════════════════════════════════


class TestSubmitWeeklyPlan:
    def test_plan_shares_one_batch_id(self, approved_allocation):
        batch_id, weeks = ledger.submit_weekly_plan(
            approved_allocation.id,
            [
                {"week_start_date": MONDAY, "hours": 10},
                {"week_start_date": NEXT_MONDAY, "hours": 12, "description": "Cutover prep"},
            ],
        )
        assert len(weeks) == 2
        assert {w.submission_batch_id for w in weeks} == {batch_id}
        assert weeks[1].consultant_description == "Cutover prep"

    def test_plan_budget_checked_as_a_whole(self, approved_allocation):
        with pytest.raises(BudgetExceededError) as exc:
            ledger.submit_weekly_plan(
                approved_allocation.id,
                [
                    {"week_start_date": MONDAY, "hours": 25},
                    {"week_start_date": NEXT_MONDAY, "hours": 20},
                ],
            )
        assert exc.value.excess_hours == 5
        assert WeeklyAllocation.query.count() == 0

    def test_nan_week_does_not_hide_plan_excess(self, approved_allocation):
        with pytest.raises(ValidationError):
            ledger.submit_weekly_plan(
                approved_allocation.id,
                [
                    {"week_start_date": MONDAY, "hours": float("nan")},
                    {"week_start_date": NEXT_MONDAY, "hours": 500},
                ],
            )
        assert WeeklyAllocation.query.count() == 0

    def test_duplicate_week_in_plan(self, approved_allocation):
        with pytest.raises(ValidationError):
            ledger.submit_weekly_plan(
                approved_allocation.id,
                [
                    {"week_start_date": MONDAY, "hours": 5},
                    {"week_start_date": MONDAY + timedelta(days=2), "hours": 5},
                ],
            )

    def test_empty_plan(self, approved_allocation):
        with pytest.raises(ValidationError):
            ledger.submit_weekly_plan(approved_allocation.id, [])


# ═════════════════════════════════════════════════════════════════════════
# ALLOCATION REQUESTS
# ═════════════════════════════════════════════════════════════════════════


class TestCreateOrMergeAllocation:
    def test_new_request_is_pending(self, consultant, phase):
        alloc = ledger.create_or_merge_allocation(consultant.id, phase.id, 24)
        assert alloc.approval_status == "PENDING"
        assert alloc.total_hours == 24
        assert alloc.parent_allocation_id is None
        assert alloc.is_composite is False

    def test_top_up_points_at_approved_grant(self, consultant, phase, approved_allocation):
        top_up = ledger.create_or_merge_allocation(consultant.id, phase.id, 10)
        assert top_up.id != approved_allocation.id
        assert top_up.parent_allocation_id == approved_allocation.id
        assert top_up.approval_status == "PENDING"

    def test_zero_hours_rejected(self, consultant, phase):
        with pytest.raises(ValidationError):
            ledger.create_or_merge_allocation(consultant.id, phase.id, 0)

    @pytest.mark.parametrize("hours", [float("nan"), float("inf"), None])
    def test_non_finite_hours_rejected(self, consultant, phase, hours):
        with pytest.raises(ValidationError):
            ledger.create_or_merge_allocation(consultant.id, phase.id, hours)
        assert PhaseAllocation.query.count() == 0

    def test_unknown_consultant(self, phase):
        with pytest.raises(NotFoundError) as exc:
            ledger.create_or_merge_allocation("nobody", phase.id, 8)
        assert exc.value.resource == "Consultant"

    def test_unknown_phase(self, consultant):
        with pytest.raises(NotFoundError) as exc:
            ledger.create_or_merge_allocation(consultant.id, "no-phase", 8)
        assert exc.value.resource == "Phase"

    def test_list_phase_allocations(self, consultant, phase, make_consultant):
        other = make_consultant()
        ledger.create_or_merge_allocation(consultant.id, phase.id, 8)
        ledger.create_or_merge_allocation(other.id, phase.id, 16)
        assert len(ledger.list_phase_allocations(phase.id)) == 2


class TestRequestLocking:
    """Request and decision paths on a pending row share its locks."""

    @staticmethod
    def _hold(keys, held, released_at):
        with locked(*keys):
            held.set()
            time.sleep(0.2)
            released_at.append(time.monotonic())

    def _run_while_held(self, keys, action):
        held = threading.Event()
        released_at = []
        worker = threading.Thread(target=self._hold, args=(keys, held, released_at))
        worker.start()
        assert held.wait(timeout=5)
        try:
            result = action()
            finished_at = time.monotonic()
        finally:
            worker.join()
        return result, finished_at, released_at[0]

    def test_fold_waits_for_pending_row_lock(self, consultant, phase):
        pending_id = ledger.create_or_merge_allocation(consultant.id, phase.id, 8).id

        merged, finished_at, released_at = self._run_while_held(
            [alloc_key(pending_id)],
            lambda: ledger.create_or_merge_allocation(consultant.id, phase.id, 4),
        )

        assert finished_at >= released_at
        assert merged.id == pending_id
        assert merged.total_hours == 12

    def test_reject_waits_for_pair_lock(self, consultant, phase):
        pending_id = ledger.create_or_merge_allocation(consultant.id, phase.id, 8).id

        rejected, finished_at, released_at = self._run_while_held(
            [pair_key(consultant.id, phase.id)],
            lambda: asm.reject_phase(pending_id, "Budget is frozen for this quarter", "lead@example.com"),
        )

        assert finished_at >= released_at
        assert rejected.approval_status == "REJECTED"

    def test_request_transaction_yields_locked_pending_row(self, consultant, phase):
        pending_id = ledger.create_or_merge_allocation(consultant.id, phase.id, 8).id
        with request_transaction(consultant.id, phase.id) as pending:
            assert pending.id == pending_id
        other = ledger.create_or_merge_allocation(consultant.id, phase.id, 2)
        assert other.id == pending_id
        assert PhaseAllocation.query.count() == 1


class TestReasons:
    def test_reason_must_have_ten_characters(self):
        with pytest.raises(ValidationError):
            ledger.validate_reason("too short")

    def test_reason_is_stripped_before_counting(self):
        with pytest.raises(ValidationError):
            ledger.validate_reason("   short     ")

    def test_reason_accepted(self):
        assert ledger.validate_reason("  Not needed anymore ") == "Not needed anymore"
