"""Bounded worker pool for scenario batches."""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import List, Optional, Sequence

from .aggregator import AggregateResult, aggregate, batch_sizes, simulate_batch
from .errors import ComputeTimeoutError
from .params import SimulationParams, validate_params
from .settings import EngineSettings

logger = logging.getLogger(__name__)


class ExecutionPool:
    """
    Runs scenario batches on a fixed set of worker threads.

    The sequencing kernels release the GIL, so batches run in parallel.  Each
    run is split into ``batches`` partitions seeded from ``(seed, batch)``,
    which keeps results independent of the worker count and of scheduling.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        batches: int = 8,
        timeout_seconds: float = 120.0,
    ):
        if batches <= 0:
            raise ValueError("batches must be positive")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.max_workers = max_workers or os.cpu_count() or 1
        self.batches = batches
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="scenario-batch"
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ExecutionPool":
        return cls(settings.max_workers, settings.batches, settings.timeout_seconds)

    def run(self, params: SimulationParams, iterations: int = 1000) -> AggregateResult:
        return self.run_many([params], iterations)[0]

    def run_many(self, runs: Sequence[SimulationParams], iterations: int = 1000) -> List[AggregateResult]:
        """
        Run several parameter sets on the shared workers.

        All batches of all runs are submitted together and share one deadline;
        results come back in the order of ``runs``.
        """

        if iterations <= 0:
            raise ValueError("iterations must be positive")
        for params in runs:
            validate_params(params)

        start = time.perf_counter()
        sizes = batch_sizes(iterations, self.batches)
        futures: List[List[Future]] = []
        for params in runs:
            futures.append([
                self._executor.submit(simulate_batch, params, batch, count)
                for batch, count in enumerate(sizes)
                if count > 0
            ])
        pending = [f for per_run in futures for f in per_run]
        logger.debug(
            "Submitted %d runs x %d batches (%d iterations each) to %d workers",
            len(runs), len(futures[0]) if futures else 0, iterations, self.max_workers,
        )

        done, not_done = wait(pending, timeout=self.timeout_seconds, return_when=FIRST_EXCEPTION)
        if not_done:
            failed = next((f for f in done if f.exception() is not None), None)
            for f in not_done:
                f.cancel()
            if failed is not None:
                raise failed.exception()
            raise ComputeTimeoutError(self.timeout_seconds, len(done), len(pending))

        results = []
        for params, per_run in zip(runs, futures):
            # Merge in batch order
            outcomes = [outcome for f in per_run for outcome in f.result()]
            results.append(aggregate(outcomes, params))
        logger.info(
            "Completed %d runs of %d iterations in %.2fs",
            len(runs), iterations, time.perf_counter() - start,
        )
        return results

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ExecutionPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
