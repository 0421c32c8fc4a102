"""Point prevalence at the index date.

Combines counted prevalence from the registry years with simulated
prevalence for older years:

  n ≤ registry years:  estimate = Σ counted, binomial variance p(1-p)/N
  n > registry years:  estimate = Σ counted + mean over draws of Σ simulated
                       variance = binomial(counted) + Var_draws(Σ simulated)/N²

CI = estimate ± z(level) · sqrt(variance) · proportion.

When every requested year is covered by the registry the bootstrap and
simulation are skipped entirely unless always_simulate is set.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from prevest.config import PrevalenceConfig, validate_config
from prevest.incidence import INCIDENCE_MODELS, IncidenceModel
from prevest.mortality import load_life_table, validate_life_table
from prevest.perf import StageTimer
from prevest.registry import (
    RegistryData,
    RegistryRoles,
    default_num_reg_years,
    determine_registry_years,
    prevalence_counted,
    raw_incidence,
    to_date,
)
from prevest.simulation import SimulatedPrevalence, prevalence_simulated
from prevest.survival import SURVIVAL_MODELS, SurvivalModel


logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# POINT ESTIMATE
# ═══════════════════════════════════════════════════════════════════════

def proportion_label(proportion: float) -> str:
    """'per100K' for 1e5, 'per1M' for 1e6, 'per100' for 100."""
    if proportion / 1e6 >= 1:
        value, unit = proportion / 1e6, 'M'
    elif proportion / 1e3 >= 1:
        value, unit = proportion / 1e3, 'K'
    else:
        value, unit = proportion, ''
    return f"per{value:g}{unit}"


@dataclass(frozen=True)
class PrevalenceEstimate:
    """Prevalence from cases diagnosed in the last `years` years."""
    years: int
    absolute_prevalence: float
    per_proportion: float
    lower: float
    upper: float
    proportion: float

    @property
    def confidence_interval(self):
        return (self.lower, self.upper)

    def to_dict(self) -> dict:
        label = proportion_label(self.proportion)
        return {
            'absolute.prevalence': self.absolute_prevalence,
            label: self.per_proportion,
            f'{label}.lower': self.lower,
            f'{label}.upper': self.upper,
        }


def point_estimate(
    years: int,
    counted: np.ndarray,
    num_reg_years: int,
    population_size: float,
    simulated: Optional[SimulatedPrevalence] = None,
    proportion: float = 100e3,
    level: float = 0.95,
    precision: Optional[int] = 2,
) -> PrevalenceEstimate:
    """Estimate and CI for one requested number of years.

    Args:
        years: Years of diagnoses to include (≥ 1).
        counted: Counted contributions, oldest registry year first.
        num_reg_years: Registry years.
        population_size: Population at risk.
        simulated: Needed when years > num_reg_years.
        precision: Decimal places, or None for no rounding.
    """
    if years < 1:
        raise ValueError(f"years must be >= 1, got {years}")
    if population_size <= 0:
        raise ValueError(f"population_size must be positive, got {population_size}")
    if not (0.0 < level < 1.0):
        raise ValueError(f"level must be in (0, 1), got {level}")
    if years > num_reg_years and simulated is None:
        raise ValueError(
            f"estimating {years} years with {num_reg_years} registry years "
            f"needs simulated contributions"
        )

    means = np.zeros(max(years, num_reg_years), dtype=np.float64)
    if simulated is not None:
        n_sim = min(len(simulated.mean_yearly_contributions), len(means))
        means[:n_sim] = simulated.mean_yearly_contributions[:n_sim]
    # Year offsets count back from the index date
    means[:num_reg_years] = np.asarray(counted, dtype=np.float64)[::-1]

    z_level = stats.norm.ppf((1.0 + level) / 2.0)
    estimate = float(np.sum(means[:years]))
    raw_proportion = estimate / population_size

    if years <= num_reg_years:
        variance = raw_proportion * (1.0 - raw_proportion) / population_size
    else:
        samples = simulated.yearly_contributions[num_reg_years:years, :]
        by_sample = samples.sum(axis=0)
        counted_part = float(np.sum(means[:num_reg_years]))
        raw_n = counted_part / population_size
        var_counted = raw_n * (1.0 - raw_n) / population_size
        var_simulated = (np.var(by_sample, ddof=1) if len(by_sample) > 1 else 0.0)
        variance = var_counted + var_simulated / population_size ** 2

    per = proportion * raw_proportion
    half_width = z_level * np.sqrt(variance) * proportion

    def _round(x):
        return float(x) if precision is None else round(float(x), precision)

    return PrevalenceEstimate(
        years=years,
        absolute_prevalence=_round(estimate),
        per_proportion=_round(per),
        lower=_round(per - half_width),
        upper=_round(per + half_width),
        proportion=proportion,
    )


def prevalence_fit_test(
    counted: np.ndarray,
    simulated_means: np.ndarray,
    num_reg_years: int,
) -> float:
    """Exact test of counted vs simulated prevalence over the registry years.

    Treats both totals as Poisson counts and tests equal rates via the
    conditional binomial test. Returns the two-sided p-value.
    """
    k_counted = int(round(float(np.sum(counted))))
    k_simulated = int(round(float(np.sum(np.asarray(simulated_means)[:num_reg_years]))))
    n = k_counted + k_simulated
    if n == 0:
        return 1.0
    return float(stats.binomtest(k_counted, n, 0.5).pvalue)


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PrevalenceResult:
    """Output of estimate_prevalence()."""
    estimates: Dict[int, PrevalenceEstimate]
    simulated: Optional[SimulatedPrevalence]
    counted: np.ndarray
    start_date: np.datetime64
    index_date: np.datetime64
    known_inc_rate: np.ndarray
    nregyears: int
    proportion: float
    pval: float
    means: Dict[str, float] = field(default_factory=dict)

    @property
    def n_bootstraps(self) -> int:
        return 0 if self.simulated is None else self.simulated.n_bootstraps

    def __str__(self) -> str:
        lines = [f"Estimated prevalence per {self.proportion:g} at {self.index_date}"]
        for years, est in self.estimates.items():
            lines.append(f"{years} years: {est.per_proportion}")
        return '\n'.join(lines)

    def summary(self) -> str:
        lines = [
            "Registry Data",
            "~~~~~~~~~~~~~",
            f"Index date: {self.index_date}",
            f"Start date: {self.start_date}",
            f"Number of years: {self.nregyears}",
            "Known incidence rate:",
            ' '.join(str(int(x)) for x in self.known_inc_rate),
            "Counted prevalent cases:",
            ' '.join(str(int(x)) for x in self.counted),
            "",
            "Bootstrapping",
            "~~~~~~~~~~~~~",
            f"Iterations: {self.n_bootstraps}",
        ]
        if self.simulated is not None:
            ages = self.simulated.posterior_age
            ages = ages[np.isfinite(ages)]
            if len(ages):
                q = np.percentile(ages, [0, 25, 50, 75, 100])
                lines.append("Posterior age distribution summary:")
                lines.append(
                    f"Min {q[0]:.1f}  Q1 {q[1]:.1f}  Median {q[2]:.1f}  "
                    f"Mean {ages.mean():.1f}  Q3 {q[3]:.1f}  Max {q[4]:.1f}"
                )
            lines.append("Average simulated prevalent cases per year:")
            lines.append(' '.join(
                str(int(round(x))) for x in self.simulated.mean_yearly_contributions[::-1]
            ))
        lines.append(f"P-value from exact count test: {self.pval:.4g}")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        """JSON-serializable summary."""
        return {
            'estimates': {f'y{k}': v.to_dict() for k, v in self.estimates.items()},
            'counted': [int(x) for x in self.counted],
            'start_date': str(self.start_date),
            'index_date': str(self.index_date),
            'known_inc_rate': [int(x) for x in self.known_inc_rate],
            'nregyears': self.nregyears,
            'nbootstraps': self.n_bootstraps,
            'proportion': self.proportion,
            'pval': self.pval,
            'means': self.means,
            'mean_yearly_contributions': (
                None if self.simulated is None
                else [float(x) for x in self.simulated.mean_yearly_contributions]
            ),
        }


# ═══════════════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════════

def _validate_years(num_years_to_estimate) -> List[int]:
    if isinstance(num_years_to_estimate, (int, np.integer)):
        num_years_to_estimate = [num_years_to_estimate]
    years = list(num_years_to_estimate)
    if not years:
        raise ValueError("num_years_to_estimate must not be empty")
    for n in years:
        if int(n) != n or n < 1:
            raise ValueError(f"num_years_to_estimate values must be integers >= 1, got {n}")
    return [int(n) for n in years]


def estimate_prevalence(
    data: pd.DataFrame,
    roles: Union[str, Mapping[str, str], RegistryRoles],
    num_years_to_estimate: Union[int, Iterable[int]],
    population_size: float,
    start=None,
    num_reg_years: Optional[int] = None,
    cure: Optional[float] = 10,
    n_boot: int = 1000,
    max_yearly_incidence: int = 500,
    level: float = 0.95,
    precision: int = 2,
    proportion: float = 100e3,
    population_data: Optional[pd.DataFrame] = None,
    n_cores: int = 1,
    incidence_model: Optional[IncidenceModel] = None,
    survival_model: Optional[SurvivalModel] = None,
    seed: int = 42,
    min_success_fraction: float = 0.9,
    always_simulate: bool = False,
    cancel_event: Optional[threading.Event] = None,
    timer: Optional[StageTimer] = None,
) -> PrevalenceResult:
    """Estimate point prevalence at the index date.

    Args:
        data: Registry table, one row per subject.
        roles: Formula string or role → column mapping (see registry).
        num_years_to_estimate: One or more numbers of years of diagnoses
            to include. Years beyond the registry are simulated.
        population_size: Population at risk.
        start: Registry start date; defaults to the earliest entry.
        num_reg_years: Registry years; defaults to all complete years.
        cure: Cure time in years, or None.
        n_boot: Bootstrap refits of the survival model.
        max_yearly_incidence: Initial posterior-age buffer size.
        level: Confidence level.
        precision: Decimal places in reported figures.
        proportion: Report prevalence per this many people.
        population_data: Life table with age, rate, sex columns.
        n_cores: Worker processes.
        incidence_model, survival_model: Override the defaults.
        seed: Master RNG seed.
        min_success_fraction: Minimum share of converged bootstrap fits.
        always_simulate: Simulate even when all years are counted.
        cancel_event: Set to stop the run (raises EstimationCancelled).
        timer: Optional StageTimer.

    Returns:
        PrevalenceResult.
    """
    years = _validate_years(num_years_to_estimate)
    if population_size is None or population_size <= 0:
        raise ValueError(f"population_size must be positive, got {population_size}")
    if not (0.0 < level < 1.0):
        raise ValueError(f"level must be in (0, 1), got {level}")
    if n_boot < 1:
        raise ValueError(f"n_boot must be >= 1, got {n_boot}")
    if n_cores < 1:
        raise ValueError(f"n_cores must be >= 1, got {n_cores}")
    timer = timer or StageTimer(enabled=False)

    registry = RegistryData.from_frame(data, roles)
    start = registry.entry.min() if start is None else to_date(start)
    if cure is not None and population_data is not None:
        # Only sexes diagnosed on or after start are simulated
        simulated_sexes = sorted(set(registry.sex[registry.entry >= start]))
        validate_life_table(population_data, simulated_sexes)
    if num_reg_years is None:
        num_reg_years = default_num_reg_years(registry.entry, start)
    if num_reg_years < 1:
        raise ValueError(
            f"num_reg_years must be >= 1, got {num_reg_years} "
            f"(registry spans less than one complete year from {start})"
        )
    max_years = max(years)
    if num_reg_years > max_years:
        logger.info(
            "More registry years (%d) than years to estimate (%d); survival "
            "models still use all %d registry years",
            num_reg_years, max_years, num_reg_years,
        )

    with timer.track('count'):
        counted = prevalence_counted(
            registry.entry, registry.event, registry.status,
            start=start, num_reg_years=num_reg_years,
        )

    simulated = None
    if max_years > num_reg_years or always_simulate:
        with timer.track('simulate'):
            simulated = prevalence_simulated(
                registry,
                num_years_to_estimate=max(max_years, num_reg_years) if always_simulate else max_years,
                start=start,
                num_reg_years=num_reg_years,
                cure=cure,
                n_boot=n_boot,
                max_yearly_incidence=max_yearly_incidence,
                population_data=population_data,
                n_cores=n_cores,
                incidence_model=incidence_model,
                survival_model=survival_model,
                seed=seed,
                min_success_fraction=min_success_fraction,
                cancel_event=cancel_event,
            )
        known_inc_rate = simulated.known_inc_rate
        pval = prevalence_fit_test(counted, simulated.mean_yearly_contributions, num_reg_years)
    else:
        logger.info("All %d requested years are counted; skipping simulation", max_years)
        known_inc_rate = raw_incidence(registry.entry, start, num_reg_years)
        pval = prevalence_fit_test(counted, counted[::-1], num_reg_years)

    with timer.track('estimate'):
        estimates = {
            n: point_estimate(
                n, counted, num_reg_years, population_size,
                simulated=simulated, proportion=proportion,
                level=level, precision=precision,
            )
            for n in years
        }

    bounds = determine_registry_years(start, num_reg_years)
    return PrevalenceResult(
        estimates=estimates,
        simulated=simulated,
        counted=counted,
        start_date=bounds[0],
        index_date=bounds[-1],
        known_inc_rate=known_inc_rate,
        nregyears=num_reg_years,
        proportion=proportion,
        pval=pval,
        means={
            'age': float(np.mean(registry.age)),
            'sex': float(np.mean(registry.sex_codes)),
        },
    )


def estimate_from_config(
    data: pd.DataFrame,
    config: PrevalenceConfig,
    incidence_model: Optional[IncidenceModel] = None,
    survival_model: Optional[SurvivalModel] = None,
    cancel_event: Optional[threading.Event] = None,
    timer: Optional[StageTimer] = None,
) -> PrevalenceResult:
    """Run estimate_prevalence with parameters from a PrevalenceConfig.

    Explicit model objects take precedence over config.models.
    """
    validate_config(config)
    est = config.estimation
    population_data = (
        load_life_table(config.life_table.file)
        if config.life_table.file is not None else None
    )
    return estimate_prevalence(
        data,
        roles=config.registry.roles,
        num_years_to_estimate=est.num_years_to_estimate,
        population_size=est.population_size,
        start=est.start,
        num_reg_years=est.num_reg_years,
        cure=est.cure,
        n_boot=config.bootstrap.n_boot,
        max_yearly_incidence=config.simulation.max_yearly_incidence,
        level=est.level,
        precision=est.precision,
        proportion=est.proportion,
        population_data=population_data,
        n_cores=config.simulation.n_cores,
        incidence_model=incidence_model or INCIDENCE_MODELS[config.models.incidence](),
        survival_model=survival_model or SURVIVAL_MODELS[config.models.survival](),
        seed=config.simulation.seed,
        min_success_fraction=config.bootstrap.min_success_fraction,
        always_simulate=config.simulation.always_simulate,
        cancel_event=cancel_event,
        timer=timer,
    )
