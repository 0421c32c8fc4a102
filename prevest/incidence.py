"""Incidence process: rate estimation and synthetic incident populations.

Any incidence model exposes two operations:
  - fit(entry_dates, covariates, start, end) → IncidenceParameters
  - draw_incident_population(params, timeframe_days, covariate_names, rng)
      → IncidentPopulation with arrival times in [0, timeframe_days)

The default HomogeneousPoisson model has a constant daily rate λ =
observed count / elapsed days. Arrival times are the cumulative sum of
Exponential(λ) gaps; covariates are resampled with replacement from the
registry's empirical distribution.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import numpy as np

from prevest.registry import to_date, to_dates


# Extra candidate gaps drawn beyond the expected count, in standard deviations
OVERSAMPLE_SD = 5.0
OVERSAMPLE_MIN = 10


@dataclass(frozen=True)
class IncidenceParameters:
    """Fitted incidence process."""
    daily_rate: float
    n_observed: int
    elapsed_days: float
    covariate_pools: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def yearly_rate(self) -> float:
        return self.daily_rate * 365.0


@dataclass
class IncidentPopulation:
    """Synthetic incident cases, sorted by arrival time.

    Iterating yields (arrival_day, {covariate: value}) pairs lazily; the
    simulation uses the arrays directly.
    """
    arrival_days: np.ndarray
    covariates: Dict[str, np.ndarray]

    def __len__(self) -> int:
        return len(self.arrival_days)

    def __iter__(self) -> Iterator[Tuple[float, Dict[str, float]]]:
        for i, t in enumerate(self.arrival_days):
            yield float(t), {k: v[i] for k, v in self.covariates.items()}


class IncidenceModel(ABC):
    """Interface for incidence processes."""

    name = 'abstract'

    @abstractmethod
    def fit(
        self,
        entry_dates,
        covariates: Optional[Mapping[str, Iterable]] = None,
        start=None,
        end=None,
    ) -> IncidenceParameters:
        ...

    @abstractmethod
    def draw_incident_population(
        self,
        params: IncidenceParameters,
        timeframe_days: float,
        covariate_names: Iterable[str],
        rng: np.random.Generator,
    ) -> IncidentPopulation:
        ...

    def year_parameters(
        self,
        params: IncidenceParameters,
        mean_yearly_rate: float,
        n_reg_years: int,
        rng: np.random.Generator,
    ) -> IncidenceParameters:
        """Parameters for one simulated (unobserved) year.

        The base class applies no year-to-year variation.
        """
        return params


class HomogeneousPoisson(IncidenceModel):
    """Constant-rate Poisson arrivals."""

    name = 'poisson'

    def fit(self, entry_dates, covariates=None, start=None, end=None):
        """Estimate λ = count / elapsed days over [start, end].

        Args:
            entry_dates: Diagnosis dates.
            covariates: Optional mapping name → values aligned with
                entry_dates; kept as resampling pools.
            start, end: Observation window; default to the first and
                last entry date.

        Raises:
            ValueError: Fewer than 1 observation or an empty window.
        """
        entry = to_dates(entry_dates)
        if len(entry) < 1:
            raise ValueError("incidence fit needs at least 1 entry date, got 0")
        start = entry.min() if start is None else to_date(start)
        end = entry.max() if end is None else to_date(end)
        elapsed = float((end - start).astype(np.int64))
        if elapsed <= 0:
            raise ValueError(
                f"incidence observation window must be positive, got {elapsed} days"
            )
        in_window = (entry >= start) & (entry < end)
        n_obs = int(np.sum(in_window))

        pools = {}
        for name, values in (covariates or {}).items():
            values = np.asarray(values)
            if len(values) != len(entry):
                raise ValueError(
                    f"covariate '{name}' has {len(values)} values, "
                    f"expected {len(entry)}"
                )
            pools[name] = values
        return IncidenceParameters(
            daily_rate=n_obs / elapsed,
            n_observed=n_obs,
            elapsed_days=elapsed,
            covariate_pools=pools,
        )

    def draw_incident_population(self, params, timeframe_days, covariate_names, rng):
        rate = params.daily_rate
        names = list(covariate_names)
        missing = [n for n in names if n not in params.covariate_pools]
        if missing:
            raise ValueError(f"no empirical distribution for covariate(s) {missing}")

        if rate <= 0 or timeframe_days <= 0:
            arrivals = np.empty(0, dtype=np.float64)
        else:
            expected = rate * timeframe_days
            n_candidates = int(np.ceil(expected + OVERSAMPLE_SD * np.sqrt(expected)))
            n_candidates += OVERSAMPLE_MIN
            arrivals = np.cumsum(rng.exponential(1.0 / rate, size=n_candidates))
            # Extend until the timeframe is covered, then truncate
            while arrivals[-1] < timeframe_days:
                more = np.cumsum(rng.exponential(1.0 / rate, size=n_candidates))
                arrivals = np.concatenate([arrivals, arrivals[-1] + more])
            arrivals = arrivals[arrivals < timeframe_days]

        n = len(arrivals)
        covs = {}
        for name in names:
            pool = params.covariate_pools[name]
            if n > 0 and len(pool) == 0:
                raise ValueError(f"empty empirical distribution for covariate '{name}'")
            covs[name] = rng.choice(pool, size=n, replace=True) if n else pool[:0]
        return IncidentPopulation(arrival_days=arrivals, covariates=covs)

    def year_parameters(self, params, mean_yearly_rate, n_reg_years, rng):
        """Draw this year's rate from Normal(mean, sqrt(mean)/n_reg_years), clipped at 0."""
        sd = np.sqrt(mean_yearly_rate) / n_reg_years
        yearly = max(0.0, rng.normal(mean_yearly_rate, sd))
        return dataclasses.replace(params, daily_rate=yearly / 365.0)


def validate_incidence_output(
    population: IncidentPopulation,
    timeframe_days: float,
    covariate_names: Iterable[str],
) -> None:
    """Check a custom model's output shape and values.

    Raises:
        ValueError: On shape mismatch, non-finite values, arrivals
            outside [0, timeframe_days), or a missing covariate.
    """
    arrivals = np.asarray(population.arrival_days)
    if arrivals.ndim != 1:
        raise ValueError(f"arrival_days must be 1-D, got shape {arrivals.shape}")
    if not np.all(np.isfinite(arrivals)):
        raise ValueError("arrival_days must be finite")
    if len(arrivals) and (arrivals.min() < 0 or arrivals.max() >= timeframe_days):
        raise ValueError(
            f"arrival_days must lie in [0, {timeframe_days}), got "
            f"[{arrivals.min()}, {arrivals.max()}]"
        )
    for name in covariate_names:
        if name not in population.covariates:
            raise ValueError(f"incident population lacks covariate '{name}'")
        values = np.asarray(population.covariates[name])
        if values.shape != arrivals.shape:
            raise ValueError(
                f"covariate '{name}' has shape {values.shape}, "
                f"expected {arrivals.shape}"
            )
        if values.dtype.kind in 'fiu' and not np.all(np.isfinite(values)):
            raise ValueError(f"covariate '{name}' must be finite")


INCIDENCE_MODELS = {
    HomogeneousPoisson.name: HomogeneousPoisson,
}
