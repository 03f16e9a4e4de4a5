"""
Batch approval tests.

Covers:
  - Per-item isolation: one failing item does not block the rest
  - approvedHours differing from the proposal turns an approve into a modify
  - Batch-level rejection reason
  - Approval queue and submission grouping
"""

from datetime import date, datetime, timedelta

import pytest

from hourbook.models import db
from hourbook.models.allocation import WeeklyAllocation
from hourbook.services import allocation_ledger as ledger
from hourbook.services import approval_state_machine as asm
from hourbook.services import batch_approval
from hourbook.services.batch_approval import BatchItem

MONDAY = date(2026, 3, 2)
APPROVER = "lead@example.com"


def _monday(offset):
    return MONDAY + timedelta(days=7 * offset)


@pytest.fixture()
def three_weeks(approved_allocation, plan_week):
    return [plan_week(approved_allocation.id, _monday(i), 8).id for i in range(3)]


def _status(week_id):
    return db.session.get(WeeklyAllocation, week_id).planning_status


class TestApplyBatch:
    def test_already_approved_item_fails_alone(self, three_weeks):
        a, b, c = three_weeks
        asm.approve_weekly(b, APPROVER)

        result = batch_approval.approve_batch([a, b, c], APPROVER)

        assert result["updated"] == 2
        assert len(result["failed"]) == 1
        assert result["failed"][0]["id"] == b
        assert result["failed"][0]["reason"] == "ApprovalConflict"
        db.session.expire_all()
        assert [_status(w) for w in (a, b, c)] == ["APPROVED", "APPROVED", "APPROVED"]

    def test_rejected_item_fails_alone(self, three_weeks):
        a, b, c = three_weeks
        asm.reject_weekly(b, "Not needed this week", APPROVER)

        result = batch_approval.approve_batch([a, b, c], APPROVER)

        assert result["updated"] == 2
        assert [(f["id"], f["reason"]) for f in result["failed"]] == [(b, "ApprovalConflict")]
        db.session.expire_all()
        assert [_status(w) for w in (a, b, c)] == ["APPROVED", "REJECTED", "APPROVED"]

    def test_differing_hours_become_modify(self, three_weeks):
        a, b, _ = three_weeks
        result = batch_approval.apply_batch(
            [BatchItem(id=a, approved_hours=6), BatchItem(id=b, approved_hours=8)],
            default_action="approve",
            approver_id=APPROVER,
        )
        assert result == {"updated": 2, "failed": []}
        db.session.expire_all()
        week_a = db.session.get(WeeklyAllocation, a)
        assert week_a.planning_status == "MODIFIED"
        assert week_a.approved_hours == 6
        assert _status(b) == "APPROVED"

    def test_batch_reason_applies_to_rejections(self, three_weeks):
        result = batch_approval.apply_batch(
            [BatchItem(id=w) for w in three_weeks[:2]],
            default_action="reject",
            approver_id=APPROVER,
            rejection_reason="Project is on hold this month",
        )
        assert result["updated"] == 2
        db.session.expire_all()
        week = db.session.get(WeeklyAllocation, three_weeks[0])
        assert week.rejection_reason == "Project is on hold this month"

    def test_missing_rejection_reason_fails_item(self, three_weeks):
        result = batch_approval.apply_batch(
            [BatchItem(id=three_weeks[0], action="reject")],
            approver_id=APPROVER,
        )
        assert result["updated"] == 0
        assert result["failed"][0]["reason"] == "ValidationError"

    def test_over_budget_modify_rolls_back_only_that_item(self, three_weeks):
        a, b, c = three_weeks
        result = batch_approval.apply_batch(
            [
                BatchItem(id=a),
                BatchItem(id=b, action="modify", approved_hours=35),
                BatchItem(id=c),
            ],
            approver_id=APPROVER,
        )
        assert result["updated"] == 2
        assert result["failed"][0]["id"] == b
        assert result["failed"][0]["reason"] == "ExceedsRemainingBudget"
        db.session.expire_all()
        assert _status(b) == "PENDING"
        assert _status(a) == _status(c) == "APPROVED"

    def test_unknown_ids_reported(self, three_weeks):
        result = batch_approval.approve_batch([three_weeks[0], "missing"], APPROVER)
        assert result["updated"] == 1
        assert result["failed"] == [
            {"id": "missing", "reason": "NotFound", "message": "WeeklyAllocation id=missing not found"},
        ]

    def test_unknown_action(self, three_weeks):
        result = batch_approval.apply_batch([BatchItem(id=three_weeks[0], action="archive")])
        assert result["failed"][0]["reason"] == "ValidationError"


class TestApprovalQueue:
    def test_queue_lists_pending_weeks_of_approved_allocations(self, three_weeks, approved_allocation):
        asm.approve_weekly(three_weeks[0], APPROVER)
        pending = batch_approval.pending_weekly_allocations()
        assert {w.id for w in pending} == set(three_weeks[1:])

        asm.request_deletion(approved_allocation.id, None, "pm@example.com")
        assert batch_approval.pending_weekly_allocations() == []

    def test_plan_submission_is_one_group(self, approved_allocation):
        batch_id, _ = ledger.submit_weekly_plan(
            approved_allocation.id,
            [{"week_start_date": _monday(i), "hours": 5} for i in range(3)],
        )
        groups = batch_approval.group_submissions(batch_approval.pending_weekly_allocations())
        assert len(groups) == 1
        assert groups[0]["submissionBatchId"] == batch_id
        assert groups[0]["totalProposedHours"] == 15
        assert len(groups[0]["weeks"]) == 3

    def test_rows_without_batch_group_by_consultant_and_minute(self, approved_allocation, plan_week):
        first = plan_week(approved_allocation.id, _monday(0), 4)
        second = plan_week(approved_allocation.id, _monday(1), 4)
        third = plan_week(approved_allocation.id, _monday(2), 4)
        first.updated_at = datetime(2026, 3, 1, 9, 15, 10)
        second.updated_at = datetime(2026, 3, 1, 9, 15, 20)
        third.updated_at = datetime(2026, 3, 1, 11, 0, 0)
        db.session.commit()

        groups = batch_approval.group_submissions([first, second, third])

        assert [len(g["weeks"]) for g in groups] == [2, 1]
        assert groups[0]["submissionBatchId"] is None
        assert groups[0]["submittedAt"] == "2026-03-01T09:15:00"
