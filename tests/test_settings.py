from datetime import datetime
from decimal import Decimal

import pytest

from timeclock.errors import NotFoundError, ValidationError
from timeclock.services.settings import (
    BreakComplianceSettings,
    FeatureToggles,
    OvertimeSettings,
    SettingsProvider,
    apply_update,
    merge_break_compliance_settings,
    merge_feature_toggles,
    merge_overtime_settings,
)


def test_defaults():
    toggles = merge_feature_toggles(None)
    assert (toggles.geofence_mode, toggles.face_mode, toggles.early_clock_in_mode) == ("soft", "soft", "off")
    assert toggles.auto_clock_out is True
    assert toggles.max_shift_hours == 16

    overtime = merge_overtime_settings({})
    assert overtime.daily_overtime_threshold_minutes == 480
    assert overtime.daily_double_time_threshold_minutes == 720
    assert overtime.weekly_overtime_threshold_minutes == 2400
    assert overtime.overtime_multiplier == Decimal("1.5")
    assert overtime.seventh_day_rule_enabled is False

    breaks = merge_break_compliance_settings(None)
    assert breaks.jurisdiction == "CA"
    assert breaks.meal_break_threshold_minutes == 300


def test_legacy_keys_are_accepted():
    toggles = merge_feature_toggles({"gpsGeofencing": "strict", "facialRecognition": "off", "earlyClockInMinutes": 30})
    assert toggles.geofence_mode == "strict"
    assert toggles.face_mode == "off"
    assert toggles.early_clock_in_lead_minutes == 30

    overtime = merge_overtime_settings({"dailyOtThreshold": 600, "dailyDtThreshold": 700, "otMultiplier": "1.25"})
    assert overtime.daily_overtime_threshold_minutes == 600
    assert overtime.overtime_multiplier == Decimal("1.25")

    breaks = merge_break_compliance_settings({"state": "or", "penaltyRate": 2})
    assert breaks.jurisdiction == "OR"
    assert breaks.penalty_rate_in_hours == Decimal("2")


def test_invalid_key_falls_back_to_default():
    toggles = merge_feature_toggles({"geofence_mode": "sometimes", "face_mode": "strict", "unknown": 1})
    assert toggles.geofence_mode == "soft"
    assert toggles.face_mode == "strict"


def test_inconsistent_overtime_falls_back_to_defaults():
    overtime = merge_overtime_settings({"daily_overtime_threshold_minutes": 600, "daily_double_time_threshold_minutes": 500})
    assert overtime.daily_overtime_threshold_minutes == 480
    assert overtime.daily_double_time_threshold_minutes == 720


def test_seventh_day_rule_follows_toggle_unless_set():
    on = FeatureToggles(seventh_day_ot_rule=True)
    assert merge_overtime_settings({}, on).seventh_day_rule_enabled is True
    assert merge_overtime_settings({"seventh_day_rule_enabled": False}, on).seventh_day_rule_enabled is False


def test_learning_mode_window():
    toggles = merge_feature_toggles({"learningModeEndsAt": "2025-03-15T00:00:00+00:00"})
    assert toggles.learning_mode_ends_at == datetime(2025, 3, 15)
    assert toggles.in_learning_mode(datetime(2025, 3, 14, 23, 59)) is True
    assert toggles.in_learning_mode(datetime(2025, 3, 15)) is False


@pytest.mark.parametrize(
    "model, changes",
    [
        (FeatureToggles, {"face_mode": "always"}),
        (FeatureToggles, {"max_shift_hours": 0}),
        (OvertimeSettings, {"daily_double_time_threshold_minutes": 100}),
        (OvertimeSettings, {"workweek_start_day": 7}),
        (BreakComplianceSettings, {"rest_break_interval_minutes": 0}),
    ],
)
def test_apply_update_rejects_invalid(model, changes):
    with pytest.raises(ValidationError):
        apply_update(model, None, changes)


def test_apply_update_accepts_aliases_over_stored_values():
    updated = apply_update(FeatureToggles, {"geofence_mode": "soft"}, {"gpsGeofencing": "strict"})
    assert updated.geofence_mode == "strict"


class TestProvider:
    def test_for_company_merges_everything(self, db, make_company):
        company = make_company(
            timezone="America/New_York",
            settings={"geofence_mode": "strict", "seventhDayOtRule": True},
            overtime_settings={"weekly_overtime_threshold_minutes": 2000},
            break_compliance_settings={"enabled": False},
        )

        merged = SettingsProvider(db).for_company(company.id)

        assert merged.timezone == "America/New_York"
        assert merged.toggles.geofence_mode == "strict"
        assert merged.overtime.weekly_overtime_threshold_minutes == 2000
        assert merged.overtime.seventh_day_rule_enabled is True
        assert merged.break_compliance.enabled is False

    def test_unknown_timezone_uses_default(self, db, make_company):
        company = make_company(timezone="Mars/Olympus")
        assert SettingsProvider(db).for_company(company.id).timezone == "America/Los_Angeles"

    def test_updates_are_stored_as_json(self, db, company):
        provider = SettingsProvider(db)

        provider.update_toggles(company.id, {"faceMode": "strict", "maxShiftHours": 12})
        provider.update_overtime(company.id, {"overtime_multiplier": "1.75"})
        provider.update_break_compliance(company.id, {"jurisdiction": "wa"})
        db.commit()
        db.expire_all()

        assert company.settings["face_mode"] == "strict"
        assert company.settings["max_shift_hours"] == 12
        assert company.overtime_settings["overtime_multiplier"] == "1.75"
        assert company.break_compliance_settings["jurisdiction"] == "WA"
        merged = provider.for_company(company.id)
        assert merged.toggles.face_mode == "strict"
        assert merged.overtime.overtime_multiplier == Decimal("1.75")

    def test_missing_company(self, db):
        import uuid

        with pytest.raises(NotFoundError):
            SettingsProvider(db).for_company(uuid.uuid4())
