"""Calling layer: builds parameters, consults the cache and runs the pool."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from . import optimizer, stress
from .aggregator import AggregateResult
from .cache import ResultCache
from .errors import CacheInconsistencyError
from .params import build_params
from .pool import ExecutionPool
from .profile import HouseholdProfile, OptimizationOverlay
from .settings import EngineSettings

logger = logging.getLogger(__name__)

# persist(household_id, cache_key, result)
PersistFn = Callable[[str, str, AggregateResult], None]


@dataclass(frozen=True)
class SimulationResponse:
    key: str
    result: AggregateResult
    cached: bool = False
    persist_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "cached": self.cached,
            "persist_error": self.persist_error,
            "result": self.result.to_dict(),
        }


@dataclass(frozen=True)
class Comparison:
    baseline: SimulationResponse
    optimized: SimulationResponse

    @property
    def improvement(self) -> float:
        return self.optimized.result.success_probability - self.baseline.result.success_probability

    def to_dict(self) -> dict:
        return {
            "baseline": self.baseline.to_dict(),
            "optimized": self.optimized.to_dict(),
            "improvement": self.improvement,
        }


class SimulationService:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        cache: Optional[ResultCache] = None,
        pool: Optional[ExecutionPool] = None,
        persist: Optional[PersistFn] = None,
    ):
        self.settings = settings or EngineSettings()
        self.cache = cache or ResultCache(self.settings.cache_ttl_seconds)
        self.pool = pool or ExecutionPool.from_settings(self.settings)
        self.persist = persist

    def _iterations(self, iterations: Optional[int]) -> int:
        return iterations if iterations is not None else self.settings.iterations

    def simulate(
        self,
        profile: HouseholdProfile,
        overlay: Optional[OptimizationOverlay] = None,
        iterations: Optional[int] = None,
    ) -> SimulationResponse:
        """Simulate a household plan, reusing a cached result for identical inputs."""

        iterations = self._iterations(iterations)
        params = build_params(profile, overlay, self.settings.market)
        key = self.cache.make_key(params, iterations)
        computed = []

        def compute() -> AggregateResult:
            computed.append(True)
            return self.pool.run(params, iterations)

        result = self.cache.get_or_compute(key, compute, profile.household_id)
        persist_error = None
        if computed and self.persist is not None:
            try:
                self.persist(profile.household_id, key, result)
            except Exception as exc:
                # The caller still gets the fresh result
                logger.exception("Failed to persist result %s for %s", key[:12], profile.household_id)
                persist_error = str(exc)
        return SimulationResponse(key, result, cached=not computed, persist_error=persist_error)

    def compare(
        self,
        profile: HouseholdProfile,
        overlay: OptimizationOverlay,
        iterations: Optional[int] = None,
    ) -> Comparison:
        """Current plan against the overlaid plan, built as independent parameter sets."""

        baseline = self.simulate(profile, None, iterations)
        optimized = self.simulate(profile, overlay, iterations)
        return Comparison(baseline, optimized)

    def cached_result(self, household_id: str, expected_key: str) -> Optional[AggregateResult]:
        """Stored result for ``expected_key``; a mismatched entry counts as a miss."""

        try:
            return self.cache.get_verified(household_id, expected_key)
        except CacheInconsistencyError as exc:
            logger.warning("Treating inconsistent cache entry as a miss: %s", exc)
            return None

    def optimal_claim_ages(
        self,
        profile: HouseholdProfile,
        overlay: Optional[OptimizationOverlay] = None,
        objective: str = "lifetime_pv",
        iterations: Optional[int] = None,
    ) -> Dict[str, optimizer.AgeSearchResult]:
        params = build_params(profile, overlay, self.settings.market)
        if objective == "lifetime_pv":
            return optimizer.optimal_claim_ages(params, self.settings.discount_rate)
        if objective == "success_probability":
            return {
                e.owner: optimizer.best_claim_age_by_success(
                    params, self.pool, e.owner, self._iterations(iterations)
                )
                for e in params.social_security
            }
        raise ValueError(f"Unknown objective: {objective!r}")

    def optimal_retirement_age(
        self,
        profile: HouseholdProfile,
        overlay: Optional[OptimizationOverlay] = None,
        threshold: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> optimizer.AgeSearchResult:
        params = build_params(profile, overlay, self.settings.market)
        return optimizer.optimal_retirement_age(
            params,
            self.pool,
            self._iterations(iterations),
            threshold=threshold,
            max_age=self.settings.max_retirement_age,
        )

    def stress_test(
        self,
        profile: HouseholdProfile,
        specs: Optional[Iterable[stress.StressScenarioSpec]] = None,
        overlay: Optional[OptimizationOverlay] = None,
        iterations: Optional[int] = None,
        include_combined: bool = True,
    ) -> stress.StressReport:
        params = build_params(profile, overlay, self.settings.market)
        if specs is None:
            specs = [stress.StressScenarioSpec(i) for i in stress.DEFAULT_SCENARIOS]
        return stress.run_stress_tests(
            params, specs, self.pool, self._iterations(iterations), include_combined
        )

    def profile_updated(self, household_id: str) -> int:
        return self.cache.invalidate(household_id)

    def close(self) -> None:
        self.pool.close()

    def __enter__(self) -> "SimulationService":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
