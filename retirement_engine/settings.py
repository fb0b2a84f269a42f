"""Market assumptions and engine settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Optional, Tuple


# Nominal annual return assumptions by asset class
DEFAULT_STOCK_MEAN = 0.10
DEFAULT_STOCK_STD = 0.17
DEFAULT_BOND_MEAN = 0.04
DEFAULT_BOND_STD = 0.06
DEFAULT_CASH_MEAN = 0.02
DEFAULT_CASH_STD = 0.01

# General and healthcare inflation (healthcare typically inflates faster)
DEFAULT_INFLATION_MEAN = 0.025
DEFAULT_INFLATION_STD = 0.012
DEFAULT_HEALTHCARE_INFLATION_MEAN = 0.055
DEFAULT_HEALTHCARE_INFLATION_STD = 0.02

# Correlation among [stocks, bonds, cash, inflation].
# Inflation-bond correlation is historically negative: when inflation rises
# unexpectedly, bond prices fall.  Cash yields track inflation.
DEFAULT_CORRELATION = (
    (1.00, 0.10, 0.00, 0.05),
    (0.10, 1.00, 0.20, -0.40),
    (0.00, 0.20, 1.00, 0.50),
    (0.05, -0.40, 0.50, 1.00),
)

# Floors applied to every draw
MIN_ASSET_RETURN = -0.95
MIN_INFLATION = -0.05

# Long-term care statistics.
# Cumulative probability of needing LTC by age; annual probabilities are
# interpolated between the bands.
LTC_PROBABILITY_BY_AGE = {
    65: 0.02,
    70: 0.05,
    75: 0.10,
    80: 0.20,
    85: 0.35,
    90: 0.50,
}
LTC_ANNUAL_PROBABILITY_AFTER_90 = 0.10
LTC_ANNUAL_COST = 100_000  # Approximate nursing home cost (2024 dollars)
LTC_DURATION_MEAN = 2.5
LTC_DURATION_STD = 1.5
LTC_MIN_DURATION = 0.5

# IRS Uniform Lifetime Table divisors for required minimum distributions
RMD_DIVISORS = {
    72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9,
    78: 22.0, 79: 21.1, 80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7,
    84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4, 88: 13.7, 89: 12.9,
    90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1, 94: 9.5, 95: 8.9,
    96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4,
}

SETTINGS_FILE = "engine_settings.json"


@dataclass(frozen=True)
class MarketAssumptions:
    stock_mean: float = DEFAULT_STOCK_MEAN
    stock_std: float = DEFAULT_STOCK_STD
    bond_mean: float = DEFAULT_BOND_MEAN
    bond_std: float = DEFAULT_BOND_STD
    cash_mean: float = DEFAULT_CASH_MEAN
    cash_std: float = DEFAULT_CASH_STD
    inflation_mean: float = DEFAULT_INFLATION_MEAN
    inflation_std: float = DEFAULT_INFLATION_STD
    healthcare_inflation_mean: float = DEFAULT_HEALTHCARE_INFLATION_MEAN
    healthcare_inflation_std: float = DEFAULT_HEALTHCARE_INFLATION_STD
    correlation: Tuple[Tuple[float, ...], ...] = DEFAULT_CORRELATION
    ltc_annual_cost: float = LTC_ANNUAL_COST

    def means(self) -> Tuple[float, float, float, float]:
        return (self.stock_mean, self.bond_mean, self.cash_mean, self.inflation_mean)

    def stds(self) -> Tuple[float, float, float, float]:
        return (self.stock_std, self.bond_std, self.cash_std, self.inflation_std)


def ltc_annual_probability(age: int) -> float:
    """Annual probability of an LTC event starting at ``age``."""

    ages = sorted(LTC_PROBABILITY_BY_AGE)
    if age < ages[0]:
        return 0.0
    if age >= ages[-1]:
        return LTC_ANNUAL_PROBABILITY_AFTER_90
    for low, high in zip(ages, ages[1:]):
        if low <= age < high:
            span = high - low
            return (LTC_PROBABILITY_BY_AGE[high] - LTC_PROBABILITY_BY_AGE[low]) / span
    return 0.0  # pragma: no cover - bands are contiguous


def rmd_start_age(birth_year: int) -> int:
    """First age with a required minimum distribution (SECURE 2.0)."""

    if birth_year < 1951:
        return 72
    if birth_year <= 1959:
        return 73
    return 75


def rmd_divisor(age: int) -> float:
    """Uniform Lifetime divisor; ages past the table keep its last value."""

    ages = sorted(RMD_DIVISORS)
    return RMD_DIVISORS[min(max(age, ages[0]), ages[-1])]


@dataclass
class EngineSettings:
    iterations: int = 1000
    # Fixed partition count keeps results independent of the worker count
    batches: int = 8
    max_workers: Optional[int] = None
    timeout_seconds: float = 120.0
    cache_ttl_seconds: float = 3600.0
    discount_rate: float = 0.03
    success_threshold: float = 0.80
    max_retirement_age: int = 75
    market: MarketAssumptions = field(default_factory=MarketAssumptions)

    def __post_init__(self) -> None:
        if isinstance(self.market, dict):
            data = dict(self.market)
            if "correlation" in data:
                data["correlation"] = tuple(tuple(row) for row in data["correlation"])
            self.market = MarketAssumptions(**data)
        if self.max_workers is None:
            self.max_workers = os.cpu_count() or 1
        if self.iterations <= 0:
            raise ValueError("iterations must be positive")
        if self.batches <= 0:
            raise ValueError("batches must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not 0 <= self.success_threshold <= 1:
            raise ValueError("success_threshold must be between 0 and 1")


def load_settings(path: str = SETTINGS_FILE) -> EngineSettings:
    """Load saved engine settings, falling back to defaults."""

    if not os.path.exists(path):
        return EngineSettings()
    with open(path) as f:
        data = json.load(f)
    known = {f.name for f in fields(EngineSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings in {path}: {', '.join(unknown)}")
    return EngineSettings(**data)


def save_settings(settings: EngineSettings, path: str = SETTINGS_FILE) -> None:
    """Persist the provided settings to disk."""

    data = asdict(settings)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
