"""Typed household profile and optimization overlay records."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

PROFILE_SCHEMA_VERSION = 2

MARRIED_STATUSES = ("married", "partnered")
OWNERS = ("user", "spouse", "joint")


def parse_percent(val: str) -> float:
    """Convert a percentage string like '10%' to a float 0.10."""

    try:
        pct = float(val.strip().rstrip("%")) / 100
    except ValueError as exc:
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_dollars(val: str) -> float:
    """Convert a currency string like '$1,234' to a float 1234.0."""

    try:
        amt = float(val.replace("$", "").replace(",", "").strip())
    except ValueError as exc:
        raise ValueError(f"Invalid dollar amount: {val!r}") from exc
    if amt < 0:
        raise ValueError("Dollar amount cannot be negative")
    return amt


def _dollars(val: Any) -> float:
    if isinstance(val, str):
        return parse_dollars(val)
    return float(val)


def _rate(val: Any) -> float:
    if isinstance(val, str):
        return parse_percent(val)
    return float(val)


def _age(val: Any) -> float:
    age = float(val)
    return int(age) if age.is_integer() else age


def _flag(val: Any) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "y")
    return bool(val)


@dataclass(frozen=True)
class AssetHolding:
    kind: str
    value: float
    owner: str = "user"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssetHolding":
        owner = str(data.get("owner") or "user").lower()
        if owner not in OWNERS:
            raise ValueError(f"Unknown asset owner: {owner!r}")
        return cls(
            kind=str(data.get("kind") or data.get("type") or "other"),
            value=_dollars(data.get("value", 0) or 0),
            owner=owner,
        )


@dataclass(frozen=True)
class HouseholdProfile:
    """
    Household inputs the engine plans from.

    Optional fields left as ``None`` are resolved by the parameter builder;
    the ones it cannot resolve are reported as missing.  Monetary income and
    expense amounts are monthly, in today's dollars, except ``annual_income``,
    ``annual_savings`` and ``legacy_goal``.
    """

    household_id: str = ""
    schema_version: int = PROFILE_SCHEMA_VERSION
    marital_status: str = "single"

    current_age: Optional[int] = None
    spouse_current_age: Optional[int] = None
    birth_year: Optional[int] = None
    spouse_birth_year: Optional[int] = None
    retirement_age: Optional[int] = None
    spouse_retirement_age: Optional[int] = None
    life_expectancy: Optional[int] = None
    spouse_life_expectancy: Optional[int] = None

    assets: Tuple[AssetHolding, ...] = ()
    annual_income: float = 0.0
    spouse_annual_income: float = 0.0
    annual_savings: float = 0.0

    # Social Security: monthly benefit at full retirement age (PIA)
    social_security_claim_age: Optional[float] = None
    spouse_social_security_claim_age: Optional[float] = None
    social_security_benefit: Optional[float] = None
    spouse_social_security_benefit: Optional[float] = None

    pension_benefit: float = 0.0
    spouse_pension_benefit: float = 0.0
    pension_start_age: Optional[int] = None
    spouse_pension_start_age: Optional[int] = None
    pension_cola: bool = False
    part_time_income: float = 0.0
    spouse_part_time_income: float = 0.0
    part_time_end_age: int = 75

    monthly_expenses: Optional[float] = None
    monthly_healthcare_expenses: Optional[float] = None

    risk_score: int = 3
    spouse_risk_score: Optional[int] = None
    target_allocation: Optional[Tuple[float, float, float]] = None
    spouse_target_allocation: Optional[Tuple[float, float, float]] = None
    use_glide_path: bool = False

    effective_tax_rate: Optional[float] = None
    has_long_term_care_insurance: bool = False
    legacy_goal: float = 0.0
    seed: Optional[int] = None

    @property
    def is_couple(self) -> bool:
        return self.marital_status.lower() in MARRIED_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HouseholdProfile":
        """
        Build a profile from a loosely-typed mapping.

        Canonical snake_case keys take precedence over legacy camelCase
        aliases; keys the engine does not use are ignored.
        """

        values = _resolve_aliases(data, PROFILE_ALIASES)
        if "risk_questions" in values and "risk_score" not in values:
            questions = values.pop("risk_questions") or [3]
            values["risk_score"] = questions[0]
        values.pop("risk_questions", None)

        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in values or values[f.name] is None:
                continue
            raw = values[f.name]
            kwargs[f.name] = _coerce_profile_field(f.name, raw)
        ignored = sorted(set(values) - {f.name for f in fields(cls)})
        if ignored:
            logger.debug("Ignoring profile fields not used by the engine: %s", ignored)
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str) -> "HouseholdProfile":
        with open(path) as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class OptimizationOverlay:
    """Proposed changes a household is evaluating against its current plan."""

    retirement_age: Optional[int] = None
    spouse_retirement_age: Optional[int] = None
    social_security_claim_age: Optional[float] = None
    spouse_social_security_claim_age: Optional[float] = None
    monthly_expenses: Optional[float] = None
    part_time_income: Optional[float] = None
    spouse_part_time_income: Optional[float] = None
    annual_savings: Optional[float] = None
    has_long_term_care_insurance: Optional[bool] = None
    # "glide-path", "current-allocation" or a stock percentage such as "70"
    asset_allocation: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OptimizationOverlay":
        values = _resolve_aliases(data, OVERLAY_ALIASES)
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            raw = values.get(f.name)
            if raw is None:
                continue
            if f.name == "asset_allocation":
                kwargs[f.name] = str(raw)
            else:
                kwargs[f.name] = _coerce_profile_field(f.name, raw)
        return cls(**kwargs)

    def changes(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


PROFILE_ALIASES = {
    "householdId": "household_id",
    "maritalStatus": "marital_status",
    "currentAge": "current_age",
    "spouseAge": "spouse_current_age",
    "spouseCurrentAge": "spouse_current_age",
    "birthYear": "birth_year",
    "spouseBirthYear": "spouse_birth_year",
    "desiredRetirementAge": "retirement_age",
    "desired_retirement_age": "retirement_age",
    "spouseDesiredRetirementAge": "spouse_retirement_age",
    "userLifeExpectancy": "life_expectancy",
    "lifeExpectancy": "life_expectancy",
    "spouseLifeExpectancy": "spouse_life_expectancy",
    "annualIncome": "annual_income",
    "spouseAnnualIncome": "spouse_annual_income",
    "annualSavings": "annual_savings",
    "socialSecurityClaimAge": "social_security_claim_age",
    "spouseSocialSecurityClaimAge": "spouse_social_security_claim_age",
    "socialSecurityBenefit": "social_security_benefit",
    "spouseSocialSecurityBenefit": "spouse_social_security_benefit",
    "pensionBenefit": "pension_benefit",
    "spousePensionBenefit": "spouse_pension_benefit",
    "pensionStartAge": "pension_start_age",
    "spousePensionStartAge": "spouse_pension_start_age",
    "pensionCola": "pension_cola",
    "partTimeIncomeRetirement": "part_time_income",
    "spousePartTimeIncomeRetirement": "spouse_part_time_income",
    "partTimeEndAge": "part_time_end_age",
    "expectedMonthlyExpensesRetirement": "monthly_expenses",
    "monthlyHealthcareExpenses": "monthly_healthcare_expenses",
    "riskQuestions": "risk_questions",
    "riskScore": "risk_score",
    "spouseRiskScore": "spouse_risk_score",
    "targetAllocation": "target_allocation",
    "spouseTargetAllocation": "spouse_target_allocation",
    "useGlidePath": "use_glide_path",
    "effectiveTaxRate": "effective_tax_rate",
    "hasLongTermCareInsurance": "has_long_term_care_insurance",
    "legacyGoal": "legacy_goal",
}

OVERLAY_ALIASES = {
    "retirementAge": "retirement_age",
    "spouseRetirementAge": "spouse_retirement_age",
    "socialSecurityAge": "social_security_claim_age",
    "spouseSocialSecurityAge": "spouse_social_security_claim_age",
    "monthlyExpenses": "monthly_expenses",
    "partTimeIncome": "part_time_income",
    "spousePartTimeIncome": "spouse_part_time_income",
    "annualSavings": "annual_savings",
    "hasLongTermCareInsurance": "has_long_term_care_insurance",
    "assetAllocation": "asset_allocation",
}

_INT_FIELDS = {
    "schema_version", "current_age", "spouse_current_age", "birth_year",
    "spouse_birth_year", "retirement_age", "spouse_retirement_age",
    "life_expectancy", "spouse_life_expectancy", "pension_start_age",
    "spouse_pension_start_age", "part_time_end_age", "risk_score",
    "spouse_risk_score", "seed",
}
_AGE_FIELDS = {"social_security_claim_age", "spouse_social_security_claim_age"}
_BOOL_FIELDS = {"pension_cola", "use_glide_path", "has_long_term_care_insurance"}
_RATE_FIELDS = {"effective_tax_rate"}
_STR_FIELDS = {"household_id", "marital_status"}


def _resolve_aliases(data: Mapping[str, Any], aliases: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    # Aliases first so canonical keys overwrite them
    for key, val in data.items():
        if key in aliases:
            values[aliases[key]] = val
    for key, val in data.items():
        if key not in aliases:
            values[key] = val
    return values


def _coerce_profile_field(name: str, raw: Any) -> Any:
    if name == "assets":
        return tuple(
            a if isinstance(a, AssetHolding) else AssetHolding.from_dict(a) for a in raw
        )
    if name in ("target_allocation", "spouse_target_allocation"):
        if isinstance(raw, Mapping):
            raw = (raw.get("stocks", 0), raw.get("bonds", 0), raw.get("cash", 0))
        return tuple(_rate(v) for v in raw)
    if name in _STR_FIELDS:
        return str(raw)
    if name in _INT_FIELDS:
        return int(float(raw))
    if name in _AGE_FIELDS:
        return _age(raw)
    if name in _BOOL_FIELDS:
        return _flag(raw)
    if name in _RATE_FIELDS:
        return _rate(raw)
    return _dollars(raw)
