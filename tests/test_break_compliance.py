import uuid
from datetime import date
from decimal import Decimal

import pytest

from timeclock.errors import ConflictError, NotFoundError, ValidationError
from timeclock.models.models import AuditLog, WorkSession
from timeclock.services.break_compliance import BreakComplianceService, check_compliance
from timeclock.services.effects import commit_with_effects
from timeclock.services.settings import BreakComplianceSettings


CA = BreakComplianceSettings()


class TestCheckCompliance:
    def test_short_meal_on_nine_hour_shift(self):
        # 9h shift with a 20 minute meal and both rest breaks taken
        result = check_compliance(520, 20, 2, CA)

        assert [v.violation_type for v in result.violations] == ["SHORT_MEAL_BREAK"]
        violation = result.violations[0]
        assert violation.required_minutes == 30
        assert violation.actual_minutes == 20
        assert violation.penalty_hours == Decimal("1.0")
        assert result.total_penalty_hours == Decimal("1.0")
        assert result.is_compliant is False

    def test_nine_hour_shift_without_rest_breaks_adds_rest_penalty(self):
        result = check_compliance(520, 20, 0, CA)

        types = [v.violation_type for v in result.violations]
        assert types == ["SHORT_MEAL_BREAK", "MISSED_REST_BREAK"]
        rest = result.violations[1]
        assert rest.required_minutes == 20
        assert rest.actual_minutes == 0
        assert rest.penalty_hours == Decimal("2.0")
        assert result.total_penalty_hours == Decimal("3.0")

    def test_missed_meal_description_names_jurisdiction(self):
        result = check_compliance(360, 0, 1, CA)

        violation = result.violations[0]
        assert violation.violation_type == "MISSED_MEAL_BREAK"
        assert violation.actual_minutes == 0
        assert violation.description == (
            "Worked 6.0 hours without a meal break. California law requires a 30-minute "
            "meal break when working more than 5 hours."
        )

    def test_other_jurisdictions_are_described_generically(self):
        settings = BreakComplianceSettings(jurisdiction="wa")
        result = check_compliance(360, 0, 1, settings)
        assert "State law requires" in result.violations[0].description

    def test_compliant_shift(self):
        result = check_compliance(480, 30, 2, CA)
        assert result.is_compliant is True
        assert result.violations == []
        assert result.total_penalty_hours == 0

    def test_short_shift_needs_nothing(self):
        assert check_compliance(239, 0, 0, CA).is_compliant is True

    @pytest.mark.parametrize("meal, actual", [(30, 0), (45, 15), (0, 0)])
    def test_second_meal(self, meal, actual):
        result = check_compliance(660, meal, 2, CA)

        second = [v for v in result.violations if v.violation_type == "MISSED_SECOND_MEAL"]
        assert len(second) == 1
        assert second[0].required_minutes == 30
        assert second[0].actual_minutes == actual
        assert second[0].penalty_hours == Decimal("1.0")

    def test_two_full_meals_satisfy_second_meal(self):
        result = check_compliance(660, 60, 2, CA)
        assert result.is_compliant is True

    def test_disabled_is_always_compliant(self):
        result = check_compliance(900, 0, 0, BreakComplianceSettings(enabled=False))
        assert result.is_compliant is True
        assert result.violations == []

    def test_penalty_rate_scales_rest_penalty(self):
        settings = BreakComplianceSettings(penalty_rate_in_hours="0.5")
        result = check_compliance(490, 30, 0, settings)

        assert [v.violation_type for v in result.violations] == ["MISSED_REST_BREAK"]
        assert result.violations[0].penalty_hours == Decimal("1.0")


class TestRecordedViolations:
    def _closed_with_short_meal(self, time_clock, clock, worker, job):
        tc = time_clock()
        tc.clock_in(worker, "JOB_TIME", 37.0, -122.0, job_id=job.id)
        clock.advance(hours=4)
        tc.start_break(worker, "meal")
        clock.advance(minutes=20)
        tc.end_break(worker)
        clock.advance(hours=4, minutes=40)
        return tc.clock_out(worker, 37.0, -122.0)

    def test_clock_out_records_violations_with_penalty_pay(self, time_clock, clock, worker, job):
        session = self._closed_with_short_meal(time_clock, clock, worker, job)

        assert session.duration_minutes == 520
        types = sorted(v.violation_type for v in session.violations)
        assert types == ["MISSED_REST_BREAK", "SHORT_MEAL_BREAK"]
        short = next(v for v in session.violations if v.violation_type == "SHORT_MEAL_BREAK")
        assert short.penalty_amount == Decimal("20.00")
        assert session.break_compliant is False
        assert session.break_penalty_pay == Decimal("60.00")

    def test_waive_keeps_record_and_drops_from_totals(self, db, time_clock, clock, worker, admin, job):
        session = self._closed_with_short_meal(time_clock, clock, worker, job)
        service = BreakComplianceService(db, worker.company_id, "UTC")
        short = next(v for v in session.violations if v.violation_type == "SHORT_MEAL_BREAK")

        violation, effects = service.waive(short.id, admin, "Worker chose a short lunch")
        commit_with_effects(db, effects)

        assert violation.waived is True
        assert violation.waived_by_id == admin.id
        assert violation.waived_at is not None
        stats = service.stats()
        assert stats["total_violations"] == 2
        assert stats["waived_violations"] == 1
        assert stats["active_violations"] == 1
        assert stats["total_penalty_amount"] == Decimal("40.00")
        assert stats["affected_workers"] == 1
        assert stats["by_type"]["SHORT_MEAL_BREAK"] == 1
        assert stats["by_type"]["MISSED_SECOND_MEAL"] == 0
        assert db.query(AuditLog).filter(AuditLog.action == "WAIVE").count() == 1

    def test_waive_lowers_session_penalty_pay(self, db, time_clock, clock, worker, admin, job):
        session = self._closed_with_short_meal(time_clock, clock, worker, job)
        session_id = session.id
        service = BreakComplianceService(db, worker.company_id, "UTC")

        short = next(v for v in session.violations if v.violation_type == "SHORT_MEAL_BREAK")
        _, effects = service.waive(short.id, admin, "Worker chose a short lunch")
        commit_with_effects(db, effects)
        db.expire_all()
        reloaded = db.get(WorkSession, session_id)
        assert reloaded.break_penalty_pay == Decimal("40.00")
        assert reloaded.break_penalty_pay == service.stats()["total_penalty_amount"]

        rest = next(v for v in reloaded.violations if v.violation_type == "MISSED_REST_BREAK")
        _, effects = service.waive(rest.id, admin, "Rest breaks covered by site lead")
        commit_with_effects(db, effects)
        db.expire_all()
        assert db.get(WorkSession, session_id).break_penalty_pay is None

    def test_recompute_keeps_waiver(self, db, time_clock, clock, worker, admin, job):
        session = self._closed_with_short_meal(time_clock, clock, worker, job)
        session_id = session.id
        service = BreakComplianceService(db, worker.company_id, "UTC")
        short = next(v for v in session.violations if v.violation_type == "SHORT_MEAL_BREAK")
        _, effects = service.waive(short.id, admin, "Worker chose a short lunch")
        commit_with_effects(db, effects)

        time_clock().recompute(worker.company_id, session_id)
        time_clock().recompute(worker.company_id, session_id)

        db.expire_all()
        reloaded = db.get(WorkSession, session_id)
        short = next(v for v in reloaded.violations if v.violation_type == "SHORT_MEAL_BREAK")
        assert short.waived is True
        assert short.waived_by_id == admin.id
        assert short.waived_reason == "Worker chose a short lunch"
        assert len(reloaded.violations) == 2
        assert reloaded.break_penalty_pay == Decimal("40.00")
        assert service.stats()["waived_violations"] == 1

    def test_waive_requires_reason_and_is_once_only(self, db, time_clock, clock, worker, admin, job):
        session = self._closed_with_short_meal(time_clock, clock, worker, job)
        service = BreakComplianceService(db, worker.company_id, "UTC")
        violation_id = session.violations[0].id

        with pytest.raises(ValidationError):
            service.waive(violation_id, admin, "ok")
        service.waive(violation_id, admin, "Approved by site lead")
        db.commit()
        with pytest.raises(ConflictError):
            service.waive(violation_id, admin, "Approved by site lead")

    def test_waive_unknown_violation(self, db, admin, company):
        service = BreakComplianceService(db, company.id, "UTC")
        with pytest.raises(NotFoundError):
            service.waive(uuid.uuid4(), admin, "Some reason")

    def test_listing_filters(self, db, time_clock, clock, worker, make_worker, job):
        self._closed_with_short_meal(time_clock, clock, worker, job)
        other = make_worker()
        clock.advance(days=1)
        self._closed_with_short_meal(time_clock, clock, other, job)
        service = BreakComplianceService(db, worker.company_id, "UTC")

        assert len(service.list_violations()) == 4
        assert {v.worker_id for v in service.list_violations(worker_id=other.id)} == {other.id}
        assert len(service.list_violations(start_date=date(2025, 3, 13))) == 2
        assert len(service.list_violations(end_date=date(2025, 3, 12))) == 2
        assert service.list_violations(waived=True) == []
