"""Social Security benefit formulas: AIME, PIA and claim-age adjustments."""

from __future__ import annotations

import math
from typing import Optional


# 2025 Social Security parameters
BASE_YEAR = 2025
BEND_POINT_1 = 1_226  # Monthly AIME where the 90% tier ends
BEND_POINT_2 = 7_391  # Monthly AIME where the 32% tier ends
PIA_RATES = (0.90, 0.32, 0.15)
WAGE_BASE = 176_100  # Maximum taxable earnings
AVERAGE_WAGE_GROWTH = 0.0354  # SSA Trustees intermediate assumption
DEFAULT_COLA = 0.025
CAREER_YEARS = 35

FULL_RETIREMENT_AGE = 67
EARLIEST_CLAIM_AGE = 62
LATEST_CLAIM_AGE = 70

# Early claiming: 5/9 of 1% per month for the first 36 months, 5/12 of 1% after
EARLY_REDUCTION_FIRST_36 = (5 / 9) / 100
EARLY_REDUCTION_BEYOND_36 = (5 / 12) / 100
# Delayed retirement credit: 2/3 of 1% per month (8% per year) until 70
DELAYED_CREDIT_PER_MONTH = (2 / 3) / 100
# Spousal benefit early reduction: 25/36 of 1% for 36 months, 5/12 of 1% after
SPOUSAL_REDUCTION_FIRST_36 = (25 / 36) / 100

# 2025 maximum monthly benefit by claiming age, in 2025 dollars
MAX_BENEFIT_BY_AGE = {
    62: 2_831,
    63: 3_034,
    64: 3_256,
    65: 3_501,
    66: 3_760,
    67: 4_018,
    68: 4_340,
    69: 4_661,
    70: 5_108,
}

# Career-average earnings as a share of current earnings.  Higher earners
# typically have steeper career growth, so their average sits further below
# today's pay.
CAREER_AVERAGE_RATIO = (
    (150_000, 0.70),
    (100_000, 0.75),
    (75_000, 0.80),
    (50_000, 0.85),
    (0, 0.90),
)


def full_retirement_age(birth_year: int, birth_month: int = 2) -> float:
    """
    Full retirement age in years for a birth year and month.

    People born on January 1st use the previous year's schedule; January
    birthdays are treated that way here.
    """

    year = birth_year - 1 if birth_month == 1 else birth_year
    if year <= 1937:
        return 65.0
    if year <= 1942:
        return 65.0 + (year - 1937) * 2 / 12
    if year <= 1954:
        return 66.0
    if year <= 1959:
        return 66.0 + (year - 1954) * 2 / 12
    return 67.0


def estimated_years_worked(annual_income: float, claim_age: float = FULL_RETIREMENT_AGE) -> float:
    """Years of covered earnings assumed when no work history is supplied."""

    start_age = 25 if annual_income > 100_000 else 22
    years = min(CAREER_YEARS, max(10, claim_age - start_age))
    # Lower earners tend to have gaps in their record
    if annual_income < 40_000:
        years *= 0.85
    elif annual_income < 50_000:
        years *= 0.92
    return years


def calculate_aime(
    annual_income: float,
    current_age: float,
    years_worked: Optional[float] = None,
) -> float:
    """
    Approximate Average Indexed Monthly Earnings from current pay.

    Career-average earnings are estimated as a share of today's income
    (capped at the wage base), scaled by the fraction of a 35-year career
    worked and indexed forward to age 60.
    """

    if annual_income <= 0:
        return 0.0
    capped = min(annual_income, WAGE_BASE)
    ratio = next(r for floor, r in CAREER_AVERAGE_RATIO if capped >= floor)
    if years_worked is None:
        years_worked = estimated_years_worked(annual_income)
    years_factor = min(years_worked, CAREER_YEARS) / CAREER_YEARS
    years_to_indexing = max(0.0, 60 - current_age)
    indexing = (1 + AVERAGE_WAGE_GROWTH) ** years_to_indexing
    return round(capped * ratio * years_factor * indexing / 12)


def bend_points(year_of_62: Optional[int] = None) -> tuple[float, float]:
    """Bend points for the eligibility year, grown with average wages."""

    if year_of_62 is None or year_of_62 <= BASE_YEAR:
        return float(BEND_POINT_1), float(BEND_POINT_2)
    growth = (1 + AVERAGE_WAGE_GROWTH) ** (year_of_62 - BASE_YEAR)
    return float(round(BEND_POINT_1 * growth)), float(round(BEND_POINT_2 * growth))


def calculate_pia(aime: float, year_of_62: Optional[int] = None) -> float:
    """Primary Insurance Amount from AIME using the two bend points."""

    if aime <= 0:
        return 0.0
    bp1, bp2 = bend_points(year_of_62)
    r1, r2, r3 = PIA_RATES
    pia = min(aime, bp1) * r1
    if aime > bp1:
        pia += (min(aime, bp2) - bp1) * r2
    if aime > bp2:
        pia += (aime - bp2) * r3
    return float(math.floor(pia))


def estimated_pia(
    annual_income: float,
    current_age: float,
    years_worked: Optional[float] = None,
) -> float:
    """
    PIA in today's dollars for an earner who has not supplied a benefit.

    AIME is indexed forward to age 60, so the bend points are projected to
    the year the earner turns 62 and the result is deflated back by the same
    wage growth.
    """

    years_to_62 = max(0, math.ceil(EARLIEST_CLAIM_AGE - current_age))
    aime = calculate_aime(annual_income, current_age, years_worked)
    pia = calculate_pia(aime, BASE_YEAR + years_to_62)
    return pia / (1 + AVERAGE_WAGE_GROWTH) ** years_to_62


def claim_age_factor(claim_age: float, fra: float = FULL_RETIREMENT_AGE) -> float:
    """
    Multiplier applied to PIA when claiming at ``claim_age``.

    Claims before 62 are not payable (factor 0); claims after 70 earn no
    further credit and are treated as claims at 70.
    """

    if claim_age < EARLIEST_CLAIM_AGE:
        return 0.0
    claim_age = min(claim_age, LATEST_CLAIM_AGE)
    months = round((claim_age - fra) * 12)
    if months == 0:
        return 1.0
    if months < 0:
        months_early = -months
        if months_early <= 36:
            reduction = months_early * EARLY_REDUCTION_FIRST_36
        else:
            reduction = (
                36 * EARLY_REDUCTION_FIRST_36
                + (months_early - 36) * EARLY_REDUCTION_BEYOND_36
            )
        return 1 - reduction
    return 1 + months * DELAYED_CREDIT_PER_MONTH


def max_benefit_at_age(claim_age: float) -> float:
    """Published maximum monthly benefit for a claiming age."""

    age = int(min(max(math.floor(claim_age), EARLIEST_CLAIM_AGE), LATEST_CLAIM_AGE))
    return float(MAX_BENEFIT_BY_AGE[age])


def benefit_at_claim_age(
    pia: float,
    claim_age: float,
    fra: float = FULL_RETIREMENT_AGE,
    cap_growth: float = 1.0,
) -> float:
    """
    Monthly benefit when claiming at ``claim_age``.

    The adjusted amount is capped at the published maximum for that age;
    ``cap_growth`` scales the cap when PIA is expressed in future dollars.
    """

    if pia <= 0:
        return 0.0
    factor = claim_age_factor(claim_age, fra)
    if factor == 0.0:
        return 0.0
    return min(pia * factor, max_benefit_at_age(claim_age) * cap_growth)


def monthly_benefit_from_income(
    annual_income: float,
    current_age: float,
    claim_age: float = FULL_RETIREMENT_AGE,
    years_worked: Optional[float] = None,
    fra: float = FULL_RETIREMENT_AGE,
) -> float:
    """Estimated monthly benefit (today's dollars) for an earner claiming at ``claim_age``."""

    if annual_income <= 0:
        return 0.0
    if years_worked is None:
        years_worked = estimated_years_worked(annual_income, claim_age)
    pia = estimated_pia(annual_income, current_age, years_worked)
    return benefit_at_claim_age(pia, claim_age, fra)


def spousal_benefit(
    worker_pia: float,
    own_pia: float,
    claim_age: float,
    fra: float = FULL_RETIREMENT_AGE,
) -> float:
    """Spousal top-up: up to half the worker's PIA beyond the spouse's own PIA."""

    top_up = worker_pia * 0.5 - own_pia
    if top_up <= 0 or claim_age < EARLIEST_CLAIM_AGE:
        return 0.0
    months_early = max(0, round((fra - claim_age) * 12))
    if months_early <= 36:
        reduction = months_early * SPOUSAL_REDUCTION_FIRST_36
    else:
        reduction = (
            36 * SPOUSAL_REDUCTION_FIRST_36
            + (months_early - 36) * EARLY_REDUCTION_BEYOND_36
        )
    return top_up * (1 - reduction)


def survivor_benefit(deceased_benefit: float, survivor_own_benefit: float) -> float:
    return max(deceased_benefit, survivor_own_benefit)


def apply_cola(benefit: float, years: float, cola_rate: float = DEFAULT_COLA) -> float:
    return benefit * (1 + cola_rate) ** years


def lifetime_benefit_pv(
    monthly_benefit: float,
    claim_age: int,
    life_expectancy: int,
    current_age: int,
    discount_rate: float = 0.03,
) -> float:
    """
    Present value, at ``current_age``, of benefits received from
    ``claim_age`` up to ``life_expectancy``.
    """

    annual = monthly_benefit * 12
    pv = 0.0
    for age in range(int(claim_age), int(life_expectancy)):
        years_out = max(0, age - current_age)
        pv += annual / (1 + discount_rate) ** years_out
    return pv
