"""
Expiry job tests (service + ``flask expire-allocations``).
"""

from datetime import date, timedelta

from hourbook.models import db
from hourbook.models.allocation import PhaseAllocation
from hourbook.models.audit import AuditLog
from hourbook.services import allocation_ledger as ledger
from hourbook.services.expiry_service import detect_expired_allocations

MONDAY = date(2026, 3, 2)


def _status(alloc_id):
    db.session.expire_all()
    return db.session.get(PhaseAllocation, alloc_id).approval_status


class TestDetectExpired:
    def test_lapsed_allocation_with_unplanned_hours_expires(self, consultant, ended_phase, approve,
                                                            plan_week):
        alloc = approve(consultant.id, ended_phase.id, 40)
        plan_week(alloc.id, MONDAY, 10)

        result = detect_expired_allocations()

        assert result == {"checked": 1, "expired": [alloc.id]}
        assert _status(alloc.id) == "EXPIRED"
        row = AuditLog.query.filter_by(action="phase_allocation.expire").one()
        assert row.diff["unplanned_hours"] == 30

    def test_fully_planned_allocation_stays_approved(self, consultant, ended_phase, approve, plan_week):
        alloc = approve(consultant.id, ended_phase.id, 20)
        plan_week(alloc.id, MONDAY, 20)

        result = detect_expired_allocations()

        assert result["checked"] == 1
        assert result["expired"] == []
        assert _status(alloc.id) == "APPROVED"

    def test_open_phase_not_touched(self, approved_allocation):
        assert detect_expired_allocations() == {"checked": 0, "expired": []}
        assert _status(approved_allocation.id) == "APPROVED"

    def test_pending_allocations_ignored(self, consultant, ended_phase):
        alloc = ledger.create_or_merge_allocation(consultant.id, ended_phase.id, 12)
        assert detect_expired_allocations()["checked"] == 0
        assert _status(alloc.id) == "PENDING"

    def test_as_of_date(self, consultant, ended_phase, approve):
        alloc = approve(consultant.id, ended_phase.id, 12)
        # the phase was still running two days ago
        result = detect_expired_allocations(today=date.today() - timedelta(days=2))
        assert result["expired"] == []
        assert _status(alloc.id) == "APPROVED"


class TestExpireCommand:
    def test_cli_reports_counts(self, app, consultant, ended_phase, approve):
        alloc = approve(consultant.id, ended_phase.id, 16)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["expire-allocations"])

        assert result.exit_code == 0
        assert "expired 1" in result.output
        assert _status(alloc.id) == "EXPIRED"

    def test_cli_rejects_bad_date(self, app):
        result = app.test_cli_runner().invoke(args=["expire-allocations", "--today", "soon"])
        assert result.exit_code != 0
