"""
Per-company settings.

Companies store three JSON bags (feature toggles, overtime, break compliance).
Each bag is read through a typed pydantic model: defaults are merged with the
stored overrides, unknown keys are ignored and legacy camelCase keys are
accepted as aliases. Stored values that fail validation fall back to the
default for that key only.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Type, TypeVar

import structlog
from pydantic import AliasChoices, BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models.models import Company
from .time_rules import resolve_timezone

log = structlog.get_logger(__name__)

SETTINGS_VERSION = 1

GateMode = Literal["off", "soft", "strict"]


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class FeatureToggles(BaseModel):
    """Identity/location policy plus on/off switches for the time clock."""

    version: int = SETTINGS_VERSION
    geofence_mode: GateMode = Field("soft", validation_alias=_aliases("geofence_mode", "geofenceMode", "gpsGeofencing"))
    face_mode: GateMode = Field("soft", validation_alias=_aliases("face_mode", "faceMode", "facialRecognition"))
    early_clock_in_mode: GateMode = Field("off", validation_alias=_aliases("early_clock_in_mode", "earlyClockInMode", "earlyClockInRestriction"))
    overtime_calculations: bool = Field(True, validation_alias=_aliases("overtime_calculations", "overtimeCalculations"))
    seventh_day_ot_rule: bool = Field(False, validation_alias=_aliases("seventh_day_ot_rule", "seventhDayOtRule"))
    auto_clock_out: bool = Field(True, validation_alias=_aliases("auto_clock_out", "autoClockOut"))
    max_shift_hours: int = Field(16, ge=1, le=48, validation_alias=_aliases("max_shift_hours", "maxShiftHours"))
    shift_scheduling: bool = Field(False, validation_alias=_aliases("shift_scheduling", "shiftScheduling"))
    early_clock_in_lead_minutes: int = Field(15, ge=0, validation_alias=_aliases("early_clock_in_lead_minutes", "earlyClockInLeadMinutes", "earlyClockInMinutes"))
    buddy_punch_alerts: bool = Field(True, validation_alias=_aliases("buddy_punch_alerts", "buddyPunchAlerts"))
    learning_mode_ends_at: Optional[datetime] = Field(None, validation_alias=_aliases("learning_mode_ends_at", "learningModeEndsAt"))

    class Config:
        extra = "ignore"

    @field_validator("learning_mode_ends_at")
    @classmethod
    def to_naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def in_learning_mode(self, now: datetime) -> bool:
        return self.learning_mode_ends_at is not None and now < self.learning_mode_ends_at


class OvertimeSettings(BaseModel):
    version: int = SETTINGS_VERSION
    daily_overtime_threshold_minutes: int = Field(480, ge=0, validation_alias=_aliases("daily_overtime_threshold_minutes", "dailyOvertimeThresholdMinutes", "dailyOtThreshold"))
    daily_double_time_threshold_minutes: int = Field(720, ge=0, validation_alias=_aliases("daily_double_time_threshold_minutes", "dailyDoubleTimeThresholdMinutes", "dailyDtThreshold"))
    weekly_overtime_threshold_minutes: int = Field(2400, ge=0, validation_alias=_aliases("weekly_overtime_threshold_minutes", "weeklyOvertimeThresholdMinutes", "weeklyOtThreshold"))
    overtime_multiplier: Decimal = Field(Decimal("1.5"), ge=1, validation_alias=_aliases("overtime_multiplier", "overtimeMultiplier", "otMultiplier"))
    double_time_multiplier: Decimal = Field(Decimal("2.0"), ge=1, validation_alias=_aliases("double_time_multiplier", "doubleTimeMultiplier", "dtMultiplier"))
    workweek_start_day: int = Field(0, ge=0, le=6, validation_alias=_aliases("workweek_start_day", "workweekStartDay", "weekStartsOn"))
    # None means "follow the seventhDayOtRule toggle"
    seventh_day_rule_enabled: Optional[bool] = Field(None, validation_alias=_aliases("seventh_day_rule_enabled", "seventhDayRuleEnabled"))

    class Config:
        extra = "ignore"

    @model_validator(mode="after")
    def double_time_after_overtime(self):
        if self.daily_double_time_threshold_minutes < self.daily_overtime_threshold_minutes:
            raise ValueError("daily double-time threshold must not be below the daily overtime threshold")
        return self


class BreakComplianceSettings(BaseModel):
    version: int = SETTINGS_VERSION
    enabled: bool = True
    jurisdiction: str = Field("CA", validation_alias=_aliases("jurisdiction", "state"))
    meal_break_threshold_minutes: int = Field(300, ge=0, validation_alias=_aliases("meal_break_threshold_minutes", "mealBreakThresholdMinutes", "mealBreakThreshold"))
    meal_break_duration_minutes: int = Field(30, ge=0, validation_alias=_aliases("meal_break_duration_minutes", "mealBreakDurationMinutes", "mealBreakDuration"))
    second_meal_threshold_minutes: int = Field(600, ge=0, validation_alias=_aliases("second_meal_threshold_minutes", "secondMealThresholdMinutes", "secondMealThreshold"))
    rest_break_interval_minutes: int = Field(240, gt=0, validation_alias=_aliases("rest_break_interval_minutes", "restBreakIntervalMinutes", "restBreakInterval"))
    rest_break_duration_minutes: int = Field(10, ge=0, validation_alias=_aliases("rest_break_duration_minutes", "restBreakDurationMinutes", "restBreakDuration"))
    penalty_rate_in_hours: Decimal = Field(Decimal("1.0"), ge=0, validation_alias=_aliases("penalty_rate_in_hours", "penaltyRateInHours", "penaltyRate"))

    class Config:
        extra = "ignore"

    @field_validator("jurisdiction")
    @classmethod
    def upper_jurisdiction(cls, v):
        return v.strip().upper()


M = TypeVar("M", bound=BaseModel)


def _merge(model: Type[M], stored: Optional[Dict[str, Any]]) -> M:
    """Validate stored overrides over defaults, dropping keys that fail."""
    data = dict(stored or {})
    for _ in range(len(data) + 1):
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            bad_keys = {err["loc"][0] for err in exc.errors() if err.get("loc") and err["loc"][0] in data}
            if not bad_keys:
                # Cross-field failure: nothing to blame on a single key
                log.warning("settings_overrides_discarded", model=model.__name__, errors=exc.errors())
                return model()
            log.warning("settings_keys_ignored", model=model.__name__, keys=sorted(bad_keys))
            for key in bad_keys:
                data.pop(key, None)
    return model()


def merge_feature_toggles(stored: Optional[Dict[str, Any]]) -> FeatureToggles:
    return _merge(FeatureToggles, stored)


def merge_overtime_settings(
    stored: Optional[Dict[str, Any]],
    toggles: Optional[FeatureToggles] = None,
) -> OvertimeSettings:
    """Merge stored overtime overrides; the seventh-day rule defaults from the toggle."""
    merged = _merge(OvertimeSettings, stored)
    if merged.seventh_day_rule_enabled is None:
        toggles = toggles or FeatureToggles()
        merged = merged.model_copy(update={"seventh_day_rule_enabled": toggles.seventh_day_ot_rule})
    return merged


def merge_break_compliance_settings(stored: Optional[Dict[str, Any]]) -> BreakComplianceSettings:
    return _merge(BreakComplianceSettings, stored)


def _canonical_keys(model: Type[BaseModel], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Rename alias keys (camelCase, legacy) to field names; drop unknown keys."""
    lookup = {}
    for name, field in model.model_fields.items():
        lookup[name] = name
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            for choice in alias.choices:
                if isinstance(choice, str):
                    lookup[choice] = name
    return {lookup[key]: value for key, value in changes.items() if key in lookup}


def apply_update(model: Type[M], current: Optional[Dict[str, Any]], changes: Dict[str, Any]) -> M:
    """
    Strictly validate a partial update layered on the stored bag.

    Raises:
        ValidationError: if the resulting settings are invalid
    """
    current_model = _merge(model, current)
    data = current_model.model_dump()
    data.update(_canonical_keys(model, changes or {}))
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {exc.errors()[0]['msg']}")


@dataclass(frozen=True)
class CompanySettings:
    timezone: str
    toggles: FeatureToggles
    overtime: OvertimeSettings
    break_compliance: BreakComplianceSettings


class SettingsProvider:
    """Reads and writes the typed settings of a company."""

    def __init__(self, db: Session):
        self.db = db

    def _company(self, company_id) -> Company:
        company = self.db.get(Company, company_id)
        if not company:
            raise NotFoundError("Company not found")
        return company

    def for_company(self, company_id) -> CompanySettings:
        company = self._company(company_id)
        toggles = merge_feature_toggles(company.settings)
        return CompanySettings(
            timezone=resolve_timezone(company.timezone),
            toggles=toggles,
            overtime=merge_overtime_settings(company.overtime_settings, toggles),
            break_compliance=merge_break_compliance_settings(company.break_compliance_settings),
        )

    def update_toggles(self, company_id, changes: Dict[str, Any]) -> FeatureToggles:
        company = self._company(company_id)
        updated = apply_update(FeatureToggles, company.settings, changes)
        company.settings = updated.model_dump(mode="json")
        return updated

    def update_overtime(self, company_id, changes: Dict[str, Any]) -> OvertimeSettings:
        company = self._company(company_id)
        updated = apply_update(OvertimeSettings, company.overtime_settings, changes)
        company.overtime_settings = updated.model_dump(mode="json")
        return merge_overtime_settings(company.overtime_settings, merge_feature_toggles(company.settings))

    def update_break_compliance(self, company_id, changes: Dict[str, Any]) -> BreakComplianceSettings:
        company = self._company(company_id)
        updated = apply_update(BreakComplianceSettings, company.break_compliance_settings, changes)
        company.break_compliance_settings = updated.model_dump(mode="json")
        return updated
