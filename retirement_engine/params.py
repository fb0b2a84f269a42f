"""Simulation parameters and the builder that derives them from a household profile."""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from . import benefits
from .errors import IncompleteInputError, InvalidParameterError
from .profile import HouseholdProfile, OptimizationOverlay, parse_percent
from .settings import MarketAssumptions

logger = logging.getLogger(__name__)

DEFAULT_SEED = 20_250_101
DEFAULT_LIFE_EXPECTANCY = 93
ALLOCATION_TOLERANCE = 1e-6
BUCKET_NAMES = ("taxable", "tax_deferred", "tax_free", "hsa")

# Target allocation (stocks, bonds, cash) by risk score
RISK_PROFILE_ALLOCATIONS = {
    1: (0.20, 0.70, 0.10),  # Conservative
    2: (0.40, 0.50, 0.10),  # Moderately conservative
    3: (0.60, 0.35, 0.05),  # Moderate
    4: (0.75, 0.20, 0.05),  # Moderately aggressive
    5: (0.90, 0.10, 0.00),  # Aggressive
}

# Glide path keyed by years to retirement; each entry applies from that many
# years out until the next key.
GLIDE_PATH_SCHEDULE = {
    30: (0.90, 0.10, 0.00),
    25: (0.85, 0.15, 0.00),
    20: (0.80, 0.20, 0.00),
    15: (0.70, 0.25, 0.05),
    10: (0.60, 0.35, 0.05),
    5: (0.50, 0.40, 0.10),
    0: (0.40, 0.50, 0.10),
    -5: (0.35, 0.55, 0.10),
    -10: (0.30, 0.55, 0.15),
}

ASSET_BUCKET_BY_KIND = {
    "taxable-brokerage": "taxable",
    "brokerage": "taxable",
    "brokerage-account": "taxable",
    "savings": "taxable",
    "savings-account": "taxable",
    "money-market": "taxable",
    "cd": "taxable",
    "cash-value-life-insurance": "taxable",
    "non-qualified-annuities": "taxable",
    "other": "taxable",
    "401k": "tax_deferred",
    "403b": "tax_deferred",
    "457b": "tax_deferred",
    "ira": "tax_deferred",
    "traditional-ira": "tax_deferred",
    "other-tax-deferred": "tax_deferred",
    "qualified-annuities": "tax_deferred",
    "roth-ira": "tax_free",
    "roth-401k": "tax_free",
    "roth-annuities": "tax_free",
    "hsa": "hsa",
}
# Illiquid or non-retirement holdings
EXCLUDED_ASSET_KINDS = {"checking", "vehicle", "business", "real-estate", "primary-residence"}

# Effective tax rate on withdrawals by estimated gross retirement income
EFFECTIVE_TAX_BY_INCOME = (
    (50_000, 0.10),
    (100_000, 0.15),
    (200_000, 0.22),
    (math.inf, 0.28),
)


@dataclass(frozen=True)
class Allocation:
    stocks: float
    bonds: float
    cash: float

    @classmethod
    def of(cls, weights: Tuple[float, float, float]) -> "Allocation":
        return cls(*(float(w) for w in weights))

    def weights(self) -> Tuple[float, float, float]:
        return (self.stocks, self.bonds, self.cash)


@dataclass(frozen=True)
class GlidePoint:
    age: int  # user's age from which the allocation applies
    allocation: Allocation


@dataclass(frozen=True)
class AssetBuckets:
    taxable: float = 0.0
    tax_deferred: float = 0.0
    tax_free: float = 0.0
    hsa: float = 0.0

    @property
    def total(self) -> float:
        return self.taxable + self.tax_deferred + self.tax_free + self.hsa

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.taxable, self.tax_deferred, self.tax_free, self.hsa)


@dataclass(frozen=True)
class OwnerPlan:
    owner: str
    buckets: AssetBuckets
    allocation: Allocation
    glide_path: Tuple[GlidePoint, ...] = ()

    def allocation_at(self, user_age: int) -> Allocation:
        """Allocation in force at ``user_age``; the glide path overrides the base."""

        current = self.allocation
        for point in self.glide_path:
            if point.age <= user_age:
                current = point.allocation
            else:
                break
        return current


@dataclass(frozen=True)
class IncomeStream:
    owner: str
    kind: str  # "pension", "part_time", "annuity"
    annual_amount: float  # today's dollars
    start_age: float  # owner's own age
    end_age: Optional[float] = None
    cola: bool = True


@dataclass(frozen=True)
class SocialSecurityElection:
    owner: str
    pia: float  # monthly primary insurance amount
    claim_age: float
    fra: float = benefits.FULL_RETIREMENT_AGE
    worker_pia: float = 0.0  # other spouse's PIA, for the spousal top-up

    def monthly_benefit(self) -> float:
        own = benefits.benefit_at_claim_age(self.pia, self.claim_age, self.fra)
        top_up = 0.0
        if self.worker_pia > 0:
            top_up = benefits.spousal_benefit(self.worker_pia, self.pia, self.claim_age, self.fra)
        return own + top_up


@dataclass(frozen=True)
class Expenses:
    base_annual: float
    healthcare_annual: float = 0.0


@dataclass(frozen=True)
class MarketShock:
    year_offset: int
    equity_return: float
    bond_return: Optional[float] = None


@dataclass(frozen=True)
class LtcEvent:
    start_age: int
    duration_years: float
    annual_cost: float


@dataclass(frozen=True)
class SimulationParams:
    """
    Fully-resolved inputs for one simulation request.

    Instances are immutable; overlays and stress shocks derive new instances
    with :func:`dataclasses.replace`.  Ages are whole years; the spouse's
    ages are in the spouse's own terms.
    """

    current_age: int
    retirement_age: int
    life_expectancy: int
    owners: Tuple[OwnerPlan, ...]
    expenses: Expenses
    effective_tax_rate: float
    income: Tuple[IncomeStream, ...] = ()
    social_security: Tuple[SocialSecurityElection, ...] = ()
    spouse_current_age: Optional[int] = None
    spouse_retirement_age: Optional[int] = None
    spouse_life_expectancy: Optional[int] = None
    birth_year: Optional[int] = None
    spouse_birth_year: Optional[int] = None
    annual_savings: float = 0.0
    has_ltc_insurance: bool = False
    legacy_goal: float = 0.0
    legacy_check_age: Optional[int] = None  # user age at which the legacy goal is judged
    market: MarketAssumptions = field(default_factory=MarketAssumptions)
    market_shocks: Tuple[MarketShock, ...] = ()
    forced_ltc: Optional[LtcEvent] = None
    seed: int = DEFAULT_SEED
    household_id: str = field(default="", compare=False, metadata={"volatile": True})
    built_at: Optional[float] = field(default=None, compare=False, metadata={"volatile": True})

    @property
    def spouse_age_gap(self) -> int:
        """User age minus spouse age."""
        if self.spouse_current_age is None:
            return 0
        return self.current_age - self.spouse_current_age

    @property
    def horizon_age(self) -> int:
        """User's age at the end of the plan (last survivor's life expectancy)."""
        horizon = self.life_expectancy
        if self.spouse_life_expectancy is not None and self.spouse_current_age is not None:
            horizon = max(horizon, self.spouse_life_expectancy + self.spouse_age_gap)
        return horizon

    @property
    def legacy_age(self) -> int:
        if self.legacy_check_age is not None:
            return self.legacy_check_age
        return self.horizon_age

    @property
    def n_years(self) -> int:
        return max(0, self.horizon_age - self.current_age)

    @property
    def total_assets(self) -> float:
        return sum(o.buckets.total for o in self.owners)

    def owner_age(self, owner: str, user_age: int) -> int:
        if owner == "spouse":
            return user_age - self.spouse_age_gap
        return user_age

    def owner_birth_year(self, owner: str) -> int:
        explicit = self.spouse_birth_year if owner == "spouse" else self.birth_year
        if explicit is not None:
            return explicit
        return benefits.BASE_YEAR - self.owner_age(owner, self.current_age)

    def with_claim_age(self, owner: str, claim_age: float) -> "SimulationParams":
        elections = tuple(
            dataclasses.replace(e, claim_age=claim_age) if e.owner == owner else e
            for e in self.social_security
        )
        return dataclasses.replace(self, social_security=elections)

    def with_retirement_age(self, retirement_age: int) -> "SimulationParams":
        """Move the user's retirement, along with income streams that start at it."""

        income = tuple(
            dataclasses.replace(s, start_age=retirement_age)
            if s.owner != "spouse" and s.start_age == self.retirement_age and s.kind != "annuity"
            else s
            for s in self.income
        )
        return dataclasses.replace(self, retirement_age=retirement_age, income=income)


def validate_params(params: SimulationParams) -> SimulationParams:
    """Reject out-of-range or inconsistent parameters before any simulation work."""

    problems: List[str] = []
    if params.current_age < 0:
        problems.append("current_age must be non-negative")
    if params.retirement_age < params.current_age:
        problems.append("retirement_age must be >= current_age")
    if params.life_expectancy < params.retirement_age:
        problems.append("life_expectancy must be >= retirement_age")
    if params.spouse_current_age is not None:
        if params.spouse_life_expectancy is None:
            problems.append("spouse_life_expectancy is required with a spouse")
        elif params.spouse_life_expectancy < params.spouse_current_age:
            problems.append("spouse_life_expectancy must be >= spouse_current_age")
        if (
            params.spouse_retirement_age is not None
            and params.spouse_retirement_age < params.spouse_current_age
        ):
            problems.append("spouse_retirement_age must be >= spouse_current_age")
    if not params.owners:
        problems.append("at least one owner plan is required")
    for plan in params.owners:
        for name, value in zip(BUCKET_NAMES, plan.buckets.as_tuple()):
            if value < 0 or not math.isfinite(value):
                problems.append(f"{plan.owner} {name} balance must be non-negative")
        allocations = [plan.allocation] + [p.allocation for p in plan.glide_path]
        for alloc in allocations:
            if min(alloc.weights()) < 0:
                problems.append(f"{plan.owner} allocation weights must be non-negative")
            if abs(sum(alloc.weights()) - 1.0) > ALLOCATION_TOLERANCE:
                problems.append(f"{plan.owner} allocation must sum to 1.0")
    for stream in params.income:
        if stream.annual_amount < 0:
            problems.append(f"{stream.owner} {stream.kind} income must be non-negative")
    for election in params.social_security:
        if election.pia < 0:
            problems.append(f"{election.owner} Social Security PIA must be non-negative")
    if params.expenses.base_annual < 0 or params.expenses.healthcare_annual < 0:
        problems.append("expenses must be non-negative")
    if params.annual_savings < 0:
        problems.append("annual_savings must be non-negative")
    if params.legacy_goal < 0:
        problems.append("legacy_goal must be non-negative")
    if params.legacy_check_age is not None and not (
        params.current_age <= params.legacy_check_age <= params.horizon_age
    ):
        problems.append("legacy_check_age must fall within the plan horizon")
    if not 0 <= params.effective_tax_rate < 1:
        problems.append("effective_tax_rate must be in [0, 1)")
    if params.forced_ltc is not None and params.forced_ltc.annual_cost < 0:
        problems.append("forced LTC cost must be non-negative")
    if params.seed < 0:
        problems.append("seed must be non-negative")
    if problems:
        raise InvalidParameterError(problems)
    return params


# ---------------------------------------------------------------------------
# Parameter builder
# ---------------------------------------------------------------------------


def missing_required_fields(profile: HouseholdProfile) -> List[str]:
    """Retirement-planning fields the household still has to provide."""

    missing = []
    if profile.current_age is None:
        missing.append("current_age")
    if profile.retirement_age is None:
        missing.append("retirement_age")
    if profile.monthly_expenses is None:
        missing.append("monthly_expenses")
    if profile.social_security_claim_age is None:
        missing.append("social_security_claim_age")
    if profile.social_security_benefit is None and profile.annual_income <= 0:
        missing.append("social_security_benefit")
    if profile.is_couple:
        if profile.spouse_current_age is None:
            missing.append("spouse_current_age")
        if profile.spouse_social_security_claim_age is None:
            missing.append("spouse_social_security_claim_age")
    return missing


def apply_overlay(profile: HouseholdProfile, overlay: Optional[OptimizationOverlay]) -> HouseholdProfile:
    """Return a new profile with the overlay's proposed changes applied."""

    if overlay is None:
        return profile
    changes = overlay.changes()
    allocation = changes.pop("asset_allocation", None)
    if allocation is not None:
        choice = allocation.strip().lower()
        if choice == "glide-path":
            changes["use_glide_path"] = True
        elif choice == "current-allocation":
            changes["use_glide_path"] = False
        else:
            stocks = parse_percent(choice)
            weights = (stocks, round(1.0 - stocks, 10), 0.0)
            changes["target_allocation"] = weights
            changes["spouse_target_allocation"] = weights
            changes["use_glide_path"] = False
    return dataclasses.replace(profile, **changes)


def normalize_asset_kind(kind: str) -> str:
    return (
        kind.strip().lower().replace("(", "").replace(")", "").replace("_", "-").replace(" ", "-")
    )


def categorize_assets(profile: HouseholdProfile) -> dict:
    """Sum eligible holdings into tax buckets per owner."""

    totals = {owner: dict.fromkeys(BUCKET_NAMES, 0.0) for owner in ("user", "spouse", "joint")}
    for holding in profile.assets:
        if holding.value <= 0:
            continue
        kind = normalize_asset_kind(holding.kind)
        if kind in EXCLUDED_ASSET_KINDS:
            logger.debug("Excluding %s holding of %.0f", kind, holding.value)
            continue
        bucket = ASSET_BUCKET_BY_KIND.get(kind)
        if bucket is None:
            logger.debug("Unrecognized asset kind %r treated as taxable", holding.kind)
            bucket = "taxable"
        owner = holding.owner
        if owner != "user" and not profile.is_couple:
            logger.warning("%s-owned holding on a single household counted as the user's", owner)
            owner = "user"
        totals[owner][bucket] += holding.value
    return {owner: AssetBuckets(**buckets) for owner, buckets in totals.items()}


def risk_allocation(score: Optional[int]) -> Allocation:
    return Allocation.of(RISK_PROFILE_ALLOCATIONS.get(score or 3, RISK_PROFILE_ALLOCATIONS[3]))


def default_glide_path(retirement_user_age: int) -> Tuple[GlidePoint, ...]:
    """Glide path schedule expressed as user ages for a retirement at ``retirement_user_age``."""

    thresholds = sorted(GLIDE_PATH_SCHEDULE, reverse=True)
    points = [GlidePoint(0, Allocation.of(GLIDE_PATH_SCHEDULE[thresholds[0]]))]
    for previous, threshold in zip(thresholds, thresholds[1:]):
        start = retirement_user_age - previous + 1
        points.append(GlidePoint(max(0, start), Allocation.of(GLIDE_PATH_SCHEDULE[threshold])))
    return tuple(points)


def estimate_tax_rate(gross_income: float) -> float:
    return next(rate for ceiling, rate in EFFECTIVE_TAX_BY_INCOME if gross_income <= ceiling)


def _owner_pia(benefit: Optional[float], annual_income: float, current_age: int) -> float:
    # explicit benefit > computed from earnings > none
    if benefit is not None:
        return float(benefit)
    if annual_income > 0:
        return benefits.estimated_pia(annual_income, current_age)
    return 0.0


def _fra(birth_year: Optional[int], current_age: int) -> float:
    year = birth_year if birth_year is not None else benefits.BASE_YEAR - current_age
    return benefits.full_retirement_age(year)


def _iter_owners(profile: HouseholdProfile) -> Iterator[str]:
    yield "user"
    if profile.is_couple:
        yield "spouse"


def build_params(
    profile: HouseholdProfile,
    overlay: Optional[OptimizationOverlay] = None,
    market: Optional[MarketAssumptions] = None,
) -> SimulationParams:
    """
    Resolve a household profile (plus an optional overlay) into simulation
    parameters.

    Precedence for every derived value is explicit field, then a value
    computed from related fields, then a documented default.  Raises
    :class:`IncompleteInputError` when required planning fields are absent
    and :class:`InvalidParameterError` when the result is inconsistent.
    """

    profile = apply_overlay(profile, overlay)
    missing = missing_required_fields(profile)
    if missing:
        raise IncompleteInputError(missing)

    couple = profile.is_couple
    user_age = int(profile.current_age)
    retirement_age = int(profile.retirement_age)
    life_expectancy = int(profile.life_expectancy or DEFAULT_LIFE_EXPECTANCY)

    spouse_age = spouse_retirement = spouse_le = None
    gap = 0
    if couple:
        spouse_age = int(profile.spouse_current_age)
        gap = user_age - spouse_age
        spouse_retirement = int(
            profile.spouse_retirement_age
            if profile.spouse_retirement_age is not None
            else max(spouse_age, retirement_age - gap)
        )
        spouse_le = int(profile.spouse_life_expectancy or DEFAULT_LIFE_EXPECTANCY)

    # Allocations: explicit target > risk score > moderate
    user_alloc = (
        Allocation.of(profile.target_allocation)
        if profile.target_allocation is not None
        else risk_allocation(profile.risk_score)
    )
    if couple:
        if profile.spouse_target_allocation is not None:
            spouse_alloc = Allocation.of(profile.spouse_target_allocation)
        else:
            spouse_alloc = risk_allocation(profile.spouse_risk_score or profile.risk_score)
        joint_alloc = Allocation(
            *(round((u + s) / 2, 10) for u, s in zip(user_alloc.weights(), spouse_alloc.weights()))
        )
    else:
        spouse_alloc = joint_alloc = user_alloc

    buckets = categorize_assets(profile)
    user_glide = default_glide_path(retirement_age) if profile.use_glide_path else ()
    owners = [OwnerPlan("user", buckets["user"], user_alloc, user_glide)]
    if couple:
        spouse_glide = default_glide_path(spouse_retirement + gap) if profile.use_glide_path else ()
        owners.append(OwnerPlan("spouse", buckets["spouse"], spouse_alloc, spouse_glide))
    if couple and buckets["joint"].total > 0:
        owners.append(OwnerPlan("joint", buckets["joint"], joint_alloc, user_glide))

    # Social Security
    user_pia = _owner_pia(profile.social_security_benefit, profile.annual_income, user_age)
    elections = [
        SocialSecurityElection(
            "user", user_pia, float(profile.social_security_claim_age),
            _fra(profile.birth_year, user_age),
        )
    ]
    if couple:
        spouse_pia = _owner_pia(
            profile.spouse_social_security_benefit, profile.spouse_annual_income, spouse_age
        )
        elections.append(
            SocialSecurityElection(
                "spouse", spouse_pia, float(profile.spouse_social_security_claim_age),
                _fra(profile.spouse_birth_year, spouse_age), worker_pia=user_pia,
            )
        )

    # Pensions and part-time work
    income: List[IncomeStream] = []
    for owner in _iter_owners(profile):
        prefix = "" if owner == "user" else "spouse_"
        owner_retirement = retirement_age if owner == "user" else spouse_retirement
        pension = getattr(profile, f"{prefix}pension_benefit")
        if pension > 0:
            start = getattr(profile, f"{prefix}pension_start_age") or owner_retirement
            income.append(IncomeStream(owner, "pension", pension * 12, start, cola=profile.pension_cola))
        part_time = getattr(profile, f"{prefix}part_time_income")
        if part_time > 0:
            income.append(
                IncomeStream(owner, "part_time", part_time * 12, owner_retirement, profile.part_time_end_age)
            )

    base_annual = float(profile.monthly_expenses) * 12
    healthcare_annual = float(profile.monthly_healthcare_expenses or 0.0) * 12

    if profile.effective_tax_rate is not None:
        tax_rate = float(profile.effective_tax_rate)
    else:
        guaranteed = sum(e.monthly_benefit() * 12 for e in elections) + sum(s.annual_amount for s in income)
        withdrawals = max(0.0, base_annual + healthcare_annual - guaranteed)
        tax_rate = estimate_tax_rate(guaranteed + withdrawals)

    params = SimulationParams(
        current_age=user_age,
        retirement_age=retirement_age,
        life_expectancy=life_expectancy,
        owners=tuple(owners),
        expenses=Expenses(base_annual, healthcare_annual),
        effective_tax_rate=tax_rate,
        income=tuple(income),
        social_security=tuple(elections),
        spouse_current_age=spouse_age,
        spouse_retirement_age=spouse_retirement,
        spouse_life_expectancy=spouse_le,
        birth_year=profile.birth_year,
        spouse_birth_year=profile.spouse_birth_year if couple else None,
        annual_savings=profile.annual_savings,
        has_ltc_insurance=profile.has_long_term_care_insurance,
        legacy_goal=profile.legacy_goal,
        market=market or MarketAssumptions(),
        seed=profile.seed if profile.seed is not None else DEFAULT_SEED,
        household_id=profile.household_id,
        built_at=time.time(),
    )
    logger.debug(
        "Built params for %s: age %d retiring %d horizon %d, assets %.0f, tax %.2f",
        profile.household_id or "<anonymous>", user_age, retirement_age,
        params.horizon_age, params.total_assets, tax_rate,
    )
    return validate_params(params)
