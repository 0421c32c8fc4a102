"""Bootstrap refits of the survival model.

Each iteration resamples the registry survival data with replacement to
its original size and refits the survival model. Iterations are
independent: iteration i always uses task seed i, so results do not
depend on how many worker processes are used.

Failed fits (SurvivalFitError) are recorded and excluded. If fewer than
ceil(min_success_fraction · n_boot) fits succeed the run is rejected.
Successful draws are shuffled so that their order carries no trace of
the resample order.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from prevest.errors import BootstrapError, EstimationCancelled, SurvivalFitError
from prevest.rng import spawn_task_seeds, task_rng
from prevest.survival import SurvivalModel


logger = logging.getLogger(__name__)

FIT_FAILURES = (SurvivalFitError, np.linalg.LinAlgError, FloatingPointError)


@dataclass
class BootstrapDraw:
    """Posterior sample of survival-model coefficients.

    coefficients holds successful draws only, one row per draw, in
    shuffled order. success and failures are indexed by iteration.
    """
    coefficients: pd.DataFrame
    n_requested: int
    success: np.ndarray
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def n_draws(self) -> int:
        return len(self.coefficients)

    def permuted(self, order) -> 'BootstrapDraw':
        """Same draws in a different order."""
        return BootstrapDraw(
            coefficients=self.coefficients.iloc[np.asarray(order)].reset_index(drop=True),
            n_requested=self.n_requested,
            success=self.success,
            failures=dict(self.failures),
        )


# ═══════════════════════════════════════════════════════════════════════
# WORKERS
# ═══════════════════════════════════════════════════════════════════════

_WORKER_STATE: Dict[str, object] = {}


def _init_worker(model: SurvivalModel, sample: pd.DataFrame) -> None:
    _WORKER_STATE['model'] = model
    _WORKER_STATE['sample'] = sample


def _fit_resample(
    model: SurvivalModel,
    sample: pd.DataFrame,
    seed: np.random.SeedSequence,
) -> Tuple[Optional[pd.Series], Optional[str]]:
    rng = task_rng(seed)
    n = len(sample)
    idx = rng.integers(0, n, size=n)
    resample = sample.iloc[idx].reset_index(drop=True)
    try:
        return model.fit(resample), None
    except FIT_FAILURES as e:
        return None, str(e)


def _worker(args):
    """Multiprocessing worker for a single bootstrap iteration."""
    i, seed = args
    coefs, err = _fit_resample(_WORKER_STATE['model'], _WORKER_STATE['sample'], seed)
    return i, coefs, err


# ═══════════════════════════════════════════════════════════════════════
# FITTER
# ═══════════════════════════════════════════════════════════════════════

def fit_bootstrap(
    model: SurvivalModel,
    sample: pd.DataFrame,
    n_boot: int,
    seed: np.random.SeedSequence,
    shuffle_rng: np.random.Generator,
    n_cores: int = 1,
    min_success_fraction: float = 0.9,
    cancel_event: Optional[threading.Event] = None,
) -> BootstrapDraw:
    """Refit `model` on n_boot resamples of `sample`.

    Args:
        model: Survival model to refit.
        sample: Survival data (time, status, covariates).
        n_boot: Number of resamples.
        seed: Parent SeedSequence; iteration i uses its i-th child.
        shuffle_rng: Generator used to permute the successful draws.
        n_cores: Worker processes; 1 runs in-process.
        min_success_fraction: Minimum share of converged fits.
        cancel_event: Checked once per iteration.

    Raises:
        BootstrapError: Too few fits converged.
        EstimationCancelled: cancel_event was set.
    """
    if n_boot < 1:
        raise ValueError(f"n_boot must be >= 1, got {n_boot}")
    seeds = spawn_task_seeds(seed, n_boot)
    results: List[Optional[pd.Series]] = [None] * n_boot
    failures: Dict[int, str] = {}

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    if n_cores == 1:
        for i in range(n_boot):
            if _cancelled():
                logger.info("Cancellation requested at bootstrap %d/%d", i, n_boot)
                raise EstimationCancelled(f"cancelled after {i}/{n_boot} bootstrap fits")
            coefs, err = _fit_resample(model, sample, seeds[i])
            results[i] = coefs
            if err is not None:
                failures[i] = err
    else:
        chunksize = max(1, n_boot // (n_cores * 8))
        with Pool(processes=n_cores, initializer=_init_worker,
                  initargs=(model, sample)) as pool:
            done = 0
            for i, coefs, err in pool.imap_unordered(
                    _worker, enumerate(seeds), chunksize=chunksize):
                if _cancelled():
                    logger.info("Cancellation requested at bootstrap %d/%d", done, n_boot)
                    pool.terminate()
                    raise EstimationCancelled(
                        f"cancelled after {done}/{n_boot} bootstrap fits"
                    )
                results[i] = coefs
                if err is not None:
                    failures[i] = err
                done += 1

    success = np.array([r is not None for r in results])
    n_success = int(success.sum())
    n_required = int(math.ceil(min_success_fraction * n_boot))
    if failures:
        first = min(failures)
        logger.warning(
            "%d/%d bootstrap fits failed and were discarded (first: iteration %d: %s)",
            len(failures), n_boot, first, failures[first],
        )
    if n_success < n_required:
        raise BootstrapError(n_success, n_required, n_boot)

    coefs = pd.DataFrame([r for r in results if r is not None]).reset_index(drop=True)
    order = shuffle_rng.permutation(n_success)
    coefs = coefs.iloc[order].reset_index(drop=True)
    logger.info("Bootstrap: %d/%d fits converged", n_success, n_boot)
    return BootstrapDraw(
        coefficients=coefs,
        n_requested=n_boot,
        success=success,
        failures=failures,
    )
