"""Year-by-year withdrawal sequencing for one simulated life."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional, Tuple

import numpy as np
from numba import njit

from .params import SimulationParams
from .scenarios import ScenarioPath
from .settings import (
    LTC_ANNUAL_PROBABILITY_AFTER_90,
    LTC_DURATION_MEAN,
    LTC_DURATION_STD,
    LTC_MIN_DURATION,
    LTC_PROBABILITY_BY_AGE,
    rmd_divisor,
    rmd_start_age,
)

# Bucket columns of the balance matrix
TAXABLE, TAX_DEFERRED, TAX_FREE, HSA = 0, 1, 2, 3

# Trace columns
COL_AGE = 0
COL_EXPENSES = 1
COL_HEALTHCARE = 2
COL_INCOME = 3
COL_NEED = 4
COL_TAXABLE = 5
COL_TAX_DEFERRED = 6
COL_TAX_FREE = 7
COL_HSA = 8
COL_TAXES = 9
COL_BALANCE = 10
COL_CONTRIBUTIONS = 11
COL_LTC = 12
COL_RMD = 13
COL_REINVESTED = 14
TRACE_COLUMNS = 15

HSA_UNRESTRICTED_AGE = 65
HSA_EARLY_PENALTY = 0.20  # on non-medical withdrawals before 65
MAX_PENALIZED_RATE = 0.99
EPSILON = 1e-6

# LTC probability lookup arrays for JIT (ages and cumulative probabilities)
_LTC_AGES = np.array(sorted(LTC_PROBABILITY_BY_AGE), dtype=np.int64)
_LTC_PROBS = np.array([LTC_PROBABILITY_BY_AGE[a] for a in sorted(LTC_PROBABILITY_BY_AGE)])


@njit(cache=True, nogil=True)
def _ltc_probability(age: int, ages: np.ndarray, probs: np.ndarray, after_last: float) -> float:
    if age < ages[0]:
        return 0.0
    if age >= ages[-1]:
        return after_last
    for i in range(len(ages) - 1):
        if ages[i] <= age < ages[i + 1]:
            return (probs[i + 1] - probs[i]) / (ages[i + 1] - ages[i])
    return 0.0


@njit(cache=True, nogil=True)
def _draw(balances: np.ndarray, o: int, b: int, net: float, tax_rate: float, out: np.ndarray) -> float:
    """
    Withdraw up to ``net`` after-tax dollars from one bucket.

    Taxed buckets are grossed up so the amount delivered is net of tax.
    Records the gross amount in ``out[0]`` and the tax in ``out[1]``; returns
    the net amount delivered.
    """
    available = balances[o, b]
    if available <= 0.0 or net <= 0.0:
        out[0] = 0.0
        out[1] = 0.0
        return 0.0
    gross = net / (1.0 - tax_rate)
    if gross > available:
        gross = available
    balances[o, b] = available - gross
    delivered = gross * (1.0 - tax_rate)
    out[0] = gross
    out[1] = gross - delivered
    return delivered


@njit(cache=True, nogil=True)
def sequence_withdrawals(
    current_age: int,
    retirement_age: int,
    balances: np.ndarray,  # (n_owners, 4), consumed in place
    owner_returns: np.ndarray,  # (n_owners, n_years)
    owner_gaps: np.ndarray,  # user age minus owner age
    rmd_rates: np.ndarray,  # (n_owners, n_years), share of tax-deferred required out
    inflation: np.ndarray,
    healthcare_inflation: np.ndarray,
    cola_income: np.ndarray,  # today's dollars, indexed to inflation
    fixed_income: np.ndarray,  # nominal dollars
    base_expenses: float,
    healthcare_expenses: float,
    tax_rate: float,
    annual_savings: float,
    saver: int,
    ltc_exposed: bool,
    ltc_cost: float,
    ltc_trigger: np.ndarray,
    ltc_duration: np.ndarray,
    forced_ltc_age: int,
    forced_ltc_years: float,
    forced_ltc_cost: float,
    ltc_ages: np.ndarray,
    ltc_probs: np.ndarray,
    ltc_after_last: float,
):
    """
    Walk one scenario year by year.

    Returns ``(trace, years_run, failed, ltc_start_age)`` where ``trace``
    holds one row per simulated year (see the ``COL_*`` constants).
    """
    n_years = len(inflation)
    n_owners = balances.shape[0]
    trace = np.zeros((n_years, TRACE_COLUMNS))
    scratch = np.zeros(2)

    price = 1.0
    hc_price = 1.0
    had_ltc = False
    ltc_remaining = 0.0
    ltc_start_age = -1
    failed = False
    years_run = 0

    for t in range(n_years):
        age = current_age + t
        if t > 0:
            price *= 1.0 + inflation[t - 1]
            hc_price *= 1.0 + healthcare_inflation[t - 1]
        retired = age >= retirement_age
        row = trace[t]
        row[COL_AGE] = age

        # 1. guaranteed income
        income = cola_income[t] * price + fixed_income[t]

        # Working years: savings go to the saver's tax-deferred bucket
        contributions = 0.0
        if not retired and annual_savings > 0.0:
            contributions = annual_savings * price
            balances[saver, TAX_DEFERRED] += contributions

        # 2. inflate expenses; LTC costs follow healthcare inflation
        base = 0.0
        healthcare = 0.0
        if retired:
            base = base_expenses * price
            healthcare = healthcare_expenses * hc_price

        ltc = 0.0
        if forced_ltc_age >= 0 and forced_ltc_age <= age < forced_ltc_age + forced_ltc_years:
            share = min(1.0, forced_ltc_age + forced_ltc_years - age)
            ltc += forced_ltc_cost * hc_price * share
            if ltc_start_age < 0:
                ltc_start_age = forced_ltc_age
        if ltc_exposed:
            if ltc_remaining > 0.0:
                share = min(1.0, ltc_remaining)
                ltc += ltc_cost * hc_price * share
                ltc_remaining -= share
            elif not had_ltc and ltc_trigger[t] < _ltc_probability(age, ltc_ages, ltc_probs, ltc_after_last):
                had_ltc = True
                if ltc_start_age < 0:
                    ltc_start_age = age
                ltc_remaining = max(LTC_MIN_DURATION, LTC_DURATION_MEAN + LTC_DURATION_STD * ltc_duration[t])
                share = min(1.0, ltc_remaining)
                ltc += ltc_cost * hc_price * share
                ltc_remaining -= share

        healthcare += ltc
        expenses = base + healthcare

        # 3. net need, floored at zero
        need = expenses - income
        if need < 0.0:
            need = 0.0

        # 4. ordered withdrawals
        remaining = need
        taxes = 0.0
        drawn = np.zeros(4)
        hsa_eligible = min(remaining, healthcare)
        for o in range(n_owners):
            if hsa_eligible <= EPSILON:
                break
            got = _draw(balances, o, HSA, hsa_eligible, 0.0, scratch)
            drawn[HSA] += scratch[0]
            hsa_eligible -= got
            remaining -= got

        # Required minimum distributions leave tax-deferred whatever the need;
        # net proceeds beyond the need are reinvested in the taxable bucket
        rmd_total = 0.0
        reinvested = 0.0
        for o in range(n_owners):
            gross = balances[o, TAX_DEFERRED] * rmd_rates[o, t]
            if gross <= 0.0:
                continue
            balances[o, TAX_DEFERRED] -= gross
            net = gross * (1.0 - tax_rate)
            used = min(net, max(remaining, 0.0))
            remaining -= used
            if net > used:
                balances[o, TAXABLE] += net - used
                reinvested += net - used
            rmd_total += gross
            drawn[TAX_DEFERRED] += gross
            taxes += gross - net

        for b in (TAXABLE, TAX_DEFERRED, TAX_FREE):
            rate = 0.0 if b == TAX_FREE else tax_rate
            for o in range(n_owners):
                if remaining <= EPSILON:
                    break
                remaining -= _draw(balances, o, b, remaining, rate, scratch)
                drawn[b] += scratch[0]
                taxes += scratch[1]
        # HSA as a last resort, penalized before the owner turns 65
        if remaining > EPSILON:
            for o in range(n_owners):
                if remaining <= EPSILON:
                    break
                rate = tax_rate
                if age - owner_gaps[o] < HSA_UNRESTRICTED_AGE:
                    rate = min(tax_rate + HSA_EARLY_PENALTY, MAX_PENALIZED_RATE)
                remaining -= _draw(balances, o, HSA, remaining, rate, scratch)
                drawn[HSA] += scratch[0]
                taxes += scratch[1]

        # 5. growth
        for o in range(n_owners):
            growth = 1.0 + owner_returns[o, t]
            for b in range(4):
                balances[o, b] *= growth
                if balances[o, b] < 0.0:
                    balances[o, b] = 0.0

        row[COL_EXPENSES] = expenses
        row[COL_HEALTHCARE] = healthcare
        row[COL_INCOME] = income
        row[COL_NEED] = need
        row[COL_TAXABLE] = drawn[TAXABLE]
        row[COL_TAX_DEFERRED] = drawn[TAX_DEFERRED]
        row[COL_TAX_FREE] = drawn[TAX_FREE]
        row[COL_HSA] = drawn[HSA]
        row[COL_TAXES] = taxes
        row[COL_BALANCE] = balances.sum()
        row[COL_CONTRIBUTIONS] = contributions
        row[COL_LTC] = ltc
        row[COL_RMD] = rmd_total
        row[COL_REINVESTED] = reinvested
        years_run = t + 1

        # 6. unmet need is terminal
        if remaining > EPSILON:
            failed = True
            break

    return trace, years_run, failed, ltc_start_age


@dataclass(frozen=True)
class YearlyCashFlow:
    age: int
    expenses: float
    healthcare_expenses: float
    guaranteed_income: float
    withdrawal_need: float
    withdrawal_taxable: float
    withdrawal_tax_deferred: float
    withdrawal_tax_free: float
    withdrawal_hsa: float
    taxes: float
    ending_balance: float
    contributions: float = 0.0
    ltc_cost: float = 0.0
    rmd: float = 0.0
    reinvested: float = 0.0

    @property
    def total_withdrawal(self) -> float:
        return (
            self.withdrawal_taxable + self.withdrawal_tax_deferred
            + self.withdrawal_tax_free + self.withdrawal_hsa
        )

    @classmethod
    def from_row(cls, row: np.ndarray) -> "YearlyCashFlow":
        return cls(
            age=int(row[COL_AGE]),
            expenses=float(row[COL_EXPENSES]),
            healthcare_expenses=float(row[COL_HEALTHCARE]),
            guaranteed_income=float(row[COL_INCOME]),
            withdrawal_need=float(row[COL_NEED]),
            withdrawal_taxable=float(row[COL_TAXABLE]),
            withdrawal_tax_deferred=float(row[COL_TAX_DEFERRED]),
            withdrawal_tax_free=float(row[COL_TAX_FREE]),
            withdrawal_hsa=float(row[COL_HSA]),
            taxes=float(row[COL_TAXES]),
            ending_balance=float(row[COL_BALANCE]),
            contributions=float(row[COL_CONTRIBUTIONS]),
            ltc_cost=float(row[COL_LTC]),
            rmd=float(row[COL_RMD]),
            reinvested=float(row[COL_REINVESTED]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ScenarioOutcome:
    """Terminal state of one simulated life."""

    success: bool
    ending_balance: float
    depletion_age: Optional[int]
    trace: np.ndarray  # read-only, one row per simulated year
    legacy_met: bool = True
    ltc_start_age: Optional[int] = None

    @property
    def cash_flows(self) -> Tuple[YearlyCashFlow, ...]:
        return tuple(YearlyCashFlow.from_row(row) for row in self.trace)

    @property
    def lifetime_taxes(self) -> float:
        return float(self.trace[:, COL_TAXES].sum())

    @property
    def balances(self) -> np.ndarray:
        return self.trace[:, COL_BALANCE]


def _overlap(age: int, start: float, end: Optional[float]) -> float:
    # Share of the year [age, age + 1) the stream is paid
    hi = age + 1.0 if end is None else min(age + 1.0, end)
    return max(0.0, min(1.0, hi - max(float(age), start)))


def income_schedule(params: SimulationParams) -> Tuple[np.ndarray, np.ndarray]:
    """
    Guaranteed income per simulated year.

    Returns ``(cola_income, fixed_income)``: inflation-indexed amounts in
    today's dollars, and fixed nominal amounts.
    """

    n_years = params.n_years
    cola = np.zeros(n_years)
    fixed = np.zeros(n_years)
    streams = [(s.owner, s.annual_amount, s.start_age, s.end_age, s.cola) for s in params.income]
    # Social Security adjusts with inflation
    streams += [
        (e.owner, e.monthly_benefit() * 12, e.claim_age, None, True) for e in params.social_security
    ]
    for owner, amount, start, end, indexed in streams:
        if amount <= 0:
            continue
        target = cola if indexed else fixed
        for t in range(n_years):
            age = params.owner_age(owner, params.current_age + t)
            target[t] += amount * _overlap(age, start, end)
    return cola, fixed


def rmd_schedule(params: SimulationParams) -> np.ndarray:
    """Share of each owner's tax-deferred balance that must come out, per year."""

    rates = np.zeros((len(params.owners), params.n_years))
    for o, plan in enumerate(params.owners):
        start = rmd_start_age(params.owner_birth_year(plan.owner))
        for t in range(params.n_years):
            age = params.owner_age(plan.owner, params.current_age + t)
            if age >= start:
                rates[o, t] = 1.0 / rmd_divisor(age)
    return rates


def initial_balances(params: SimulationParams) -> np.ndarray:
    return np.array([plan.buckets.as_tuple() for plan in params.owners], dtype=np.float64)


def run_scenario(params: SimulationParams, path: ScenarioPath) -> ScenarioOutcome:
    """Sequence withdrawals for ``params`` along one market path."""

    cola_income, fixed_income = income_schedule(params)
    balances = initial_balances(params)
    saver = next((i for i, p in enumerate(params.owners) if p.owner == "user"), 0)
    gaps = np.array(
        [params.current_age - params.owner_age(p.owner, params.current_age) for p in params.owners],
        dtype=np.int64,
    )
    ltc_cost = params.market.ltc_annual_cost
    forced = params.forced_ltc

    trace, years_run, failed, ltc_start_age = sequence_withdrawals(
        params.current_age,
        params.retirement_age,
        balances,
        path.owner_returns,
        gaps,
        rmd_schedule(params),
        path.inflation,
        path.healthcare_inflation,
        cola_income,
        fixed_income,
        params.expenses.base_annual,
        params.expenses.healthcare_annual,
        params.effective_tax_rate,
        params.annual_savings,
        saver,
        # one LTC event per household: a forced event replaces the random one
        not params.has_ltc_insurance and forced is None,
        ltc_cost,
        path.ltc_trigger,
        path.ltc_duration,
        forced.start_age if forced is not None else -1,
        forced.duration_years if forced is not None else 0.0,
        forced.annual_cost if forced is not None else 0.0,
        _LTC_AGES,
        _LTC_PROBS,
        LTC_ANNUAL_PROBABILITY_AFTER_90,
    )
    trace = trace[:years_run]
    trace.setflags(write=False)

    ending = float(balances.sum()) if years_run == 0 else float(trace[-1, COL_BALANCE])
    depletion_age = None
    if failed:
        depletion_age = int(trace[-1, COL_AGE])
    elif ending <= 0.0:
        failed = True
        depletion_age = int(trace[-1, COL_AGE]) if years_run else params.current_age
    # Legacy is judged at the planned horizon even when the run goes longer
    check = min(years_run, params.legacy_age - params.current_age)
    if check == years_run:
        legacy_balance = ending
    elif check > 0:
        legacy_balance = float(trace[check - 1, COL_BALANCE])
    else:
        legacy_balance = params.total_assets
    price = float(np.prod(1.0 + path.inflation[:check]))
    legacy_met = legacy_balance >= params.legacy_goal * price
    return ScenarioOutcome(
        success=not failed and legacy_met,
        ending_balance=ending,
        depletion_age=depletion_age,
        trace=trace,
        legacy_met=legacy_met,
        ltc_start_age=ltc_start_age if ltc_start_age >= 0 else None,
    )
