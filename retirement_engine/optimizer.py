"""Claiming-age and retirement-age search."""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from . import benefits
from .params import SimulationParams, SocialSecurityElection
from .pool import ExecutionPool

logger = logging.getLogger(__name__)

# A candidate must beat the incumbent by more than this to replace it
TIE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class AgeSearchResult:
    """Outcome of an age search; ``values`` maps each candidate age to its objective."""

    objective: str
    best_age: Optional[int]
    values: Dict[int, float] = field(default_factory=dict)
    owner: str = "user"
    threshold: Optional[float] = None
    monthly_benefit: Optional[float] = None

    @property
    def best_value(self) -> Optional[float]:
        return None if self.best_age is None else self.values[self.best_age]

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["values"] = {str(age): v for age, v in self.values.items()}
        return data


def pick_best(values: Dict[int, float]) -> Optional[int]:
    """Age with the highest objective; the earliest age wins ties."""

    best = None
    for age in sorted(values):
        if best is None or values[age] > values[best] + TIE_TOLERANCE:
            best = age
    return best


def claim_age_candidates(current_age: float) -> List[int]:
    first = max(benefits.EARLIEST_CLAIM_AGE, math.ceil(current_age))
    return list(range(first, benefits.LATEST_CLAIM_AGE + 1))


def claim_age_present_values(
    election: SocialSecurityElection,
    current_age: float,
    life_expectancy: float,
    discount_rate: float = 0.03,
) -> Dict[int, float]:
    """Present value of lifetime benefits for every candidate claiming age."""

    values = {}
    for age in claim_age_candidates(current_age):
        monthly = dataclasses.replace(election, claim_age=age).monthly_benefit()
        values[age] = benefits.lifetime_benefit_pv(monthly, age, life_expectancy, current_age, discount_rate)
    return values


def best_claim_age_by_pv(
    pia: float,
    current_age: float,
    life_expectancy: float,
    fra: float = benefits.FULL_RETIREMENT_AGE,
    discount_rate: float = 0.03,
) -> AgeSearchResult:
    """
    Claiming age that maximizes the present value of lifetime benefits.

    Args:
        pia: Monthly benefit at full retirement age.
        current_age: Age the present value is measured at.
        life_expectancy: Benefits are received up to this age.
        fra: Full retirement age.
        discount_rate: Annual discount rate.

    Returns:
        AgeSearchResult with the chosen age and the value of every candidate.
    """
    election = SocialSecurityElection("user", pia, fra, fra)
    return _claim_result(election, current_age, life_expectancy, discount_rate)


def _claim_result(
    election: SocialSecurityElection,
    current_age: float,
    life_expectancy: float,
    discount_rate: float,
) -> AgeSearchResult:
    values = claim_age_present_values(election, current_age, life_expectancy, discount_rate)
    best = pick_best(values)
    monthly = None
    if best is not None:
        monthly = dataclasses.replace(election, claim_age=best).monthly_benefit()
    return AgeSearchResult("lifetime_pv", best, values, owner=election.owner, monthly_benefit=monthly)


def optimal_claim_ages(params: SimulationParams, discount_rate: float = 0.03) -> Dict[str, AgeSearchResult]:
    """Solve each owner's claiming age independently by lifetime present value."""

    results = {}
    for election in params.social_security:
        if election.owner == "spouse":
            current_age = params.spouse_current_age
            life_expectancy = params.spouse_life_expectancy
        else:
            current_age = params.current_age
            life_expectancy = params.life_expectancy
        result = _claim_result(election, current_age, life_expectancy, discount_rate)
        logger.info("Optimal %s claiming age by present value: %s", election.owner, result.best_age)
        results[election.owner] = result
    return results


def best_claim_age_by_success(
    params: SimulationParams,
    pool: ExecutionPool,
    owner: str = "user",
    iterations: int = 1000,
) -> AgeSearchResult:
    """Claiming age with the highest simulated success probability, same seed for every candidate."""

    election = next((e for e in params.social_security if e.owner == owner), None)
    if election is None:
        raise ValueError(f"No Social Security election for owner {owner!r}")
    owner_age = params.spouse_current_age if owner == "spouse" else params.current_age
    ages = claim_age_candidates(owner_age)
    results = pool.run_many([params.with_claim_age(owner, age) for age in ages], iterations)
    values = {age: r.success_probability for age, r in zip(ages, results)}
    best = pick_best(values)
    logger.info("Optimal %s claiming age by success probability: %s", owner, best)
    monthly = dataclasses.replace(election, claim_age=best).monthly_benefit() if best is not None else None
    return AgeSearchResult("success_probability", best, values, owner=owner, monthly_benefit=monthly)


def retirement_age_candidates(params: SimulationParams, max_age: int = 75) -> List[int]:
    last = min(max_age, params.life_expectancy, params.horizon_age - 1)
    return list(range(params.current_age, last + 1))


def optimal_retirement_age(
    params: SimulationParams,
    pool: ExecutionPool,
    iterations: int = 1000,
    threshold: Optional[float] = None,
    max_age: int = 75,
    candidates: Optional[Iterable[int]] = None,
) -> AgeSearchResult:
    """
    Search retirement ages by simulated success probability.

    With a ``threshold`` the result is the earliest age whose success
    probability reaches it, or ``None`` when no candidate does; without one
    it is the age with the highest success probability.
    """

    ages = sorted(candidates) if candidates is not None else retirement_age_candidates(params, max_age)
    results = pool.run_many([params.with_retirement_age(age) for age in ages], iterations)
    values = {age: r.success_probability for age, r in zip(ages, results)}
    if threshold is None:
        best = pick_best(values)
    else:
        best = next((age for age in ages if values[age] >= threshold), None)
        if best is None:
            logger.info("No retirement age up to %s reaches %.0f%% success", ages[-1] if ages else None, threshold * 100)
    logger.info("Retirement age search picked %s", best)
    return AgeSearchResult("success_probability", best, values, threshold=threshold)
