"""Monte Carlo simulation of prevalent cases by year of diagnosis.

For each sex s, year offset y (0 = the year ending at the index date)
and bootstrap draw d:

  1. Incident count: the observed count if y is a registry year,
     otherwise a Poisson process whose yearly rate is drawn from
     Normal(mean rate, sqrt(mean rate) / n_reg_years), clipped at 0.
  2. Ages at diagnosis are resampled from the registry ages of sex s;
     time from diagnosis to the index date is y·365 + U(0, 365) days.
  3. P(alive) comes from the survival model with draw d's coefficients.
     With a cure time c, anyone diagnosed more than c days ago survives
     the disease model up to c and general-population mortality after.
  4. Each case is alive with that probability (Bernoulli). Survivors'
     ages at the index date go into the posterior-age buffer.

Every (sex, year) pair is an independent task with its own seed, so
results are reproducible for a fixed master seed whatever n_cores is.
Per-sex results are merged by summing counts and concatenating
posterior ages. Incidence models other than HomogeneousPoisson have the
first population of every simulated year checked against the output
contract (arrivals in [0, 365), one covariate value per case).
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from prevest.bootstrap import BootstrapDraw, fit_bootstrap
from prevest.errors import EstimationCancelled, RegistryError
from prevest.incidence import (
    HomogeneousPoisson,
    IncidenceModel,
    IncidenceParameters,
    validate_incidence_output,
)
from prevest.mortality import (
    PopulationSurvival,
    default_life_table,
    population_survival_functions,
)
from prevest.registry import (
    DAYS_PER_YEAR,
    RegistryData,
    determine_registry_years,
    raw_incidence,
    to_date,
)
from prevest.rng import create_seed_hierarchy, spawn_task_seeds, task_rng
from prevest.survival import SurvivalModel, WeibullSurvival


logger = logging.getLogger(__name__)

# Covariates the simulation can supply to a survival model
SUPPORTED_COVARIATES = {'age', 'sex'}


# ═══════════════════════════════════════════════════════════════════════
# YEARLY CONTRIBUTIONS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class YearlyContribution:
    """Simulated prevalent cases diagnosed in one year, per bootstrap draw.

    posterior_ages is (capacity, n_draws), NaN-padded. Column d holds the
    index-date ages of the case_counts[d] survivors of draw d.
    """
    year: int
    case_counts: np.ndarray
    posterior_ages: np.ndarray

    @classmethod
    def empty(cls, year: int, n_draws: int, capacity: int) -> 'YearlyContribution':
        return cls(
            year=year,
            case_counts=np.zeros(n_draws, dtype=np.int64),
            posterior_ages=np.full((capacity, n_draws), np.nan),
        )

    @property
    def capacity(self) -> int:
        return self.posterior_ages.shape[0]

    @property
    def n_draws(self) -> int:
        return len(self.case_counts)

    def record(self, draw: int, ages: np.ndarray) -> None:
        """Store the survivors of one draw, growing the buffer if needed."""
        n = len(ages)
        if n > self.capacity:
            new_capacity = max(n, 2 * self.capacity)
            logger.warning(
                "Year %d: %d survivors exceed posterior buffer of %d; growing to %d "
                "(raise simulation.max_yearly_incidence to avoid this)",
                self.year, n, self.capacity, new_capacity,
            )
            self.posterior_ages = pad_rows(self.posterior_ages, new_capacity)
        self.case_counts[draw] = n
        self.posterior_ages[:n, draw] = ages

    def merge(self, other: 'YearlyContribution') -> 'YearlyContribution':
        """Combine two disjoint subgroups for the same year."""
        if other.year != self.year or other.n_draws != self.n_draws:
            raise ValueError(
                f"cannot merge year {self.year} ({self.n_draws} draws) with "
                f"year {other.year} ({other.n_draws} draws)"
            )
        return YearlyContribution(
            year=self.year,
            case_counts=self.case_counts + other.case_counts,
            posterior_ages=np.concatenate([self.posterior_ages, other.posterior_ages], axis=0),
        )


def pad_rows(buffer: np.ndarray, n_rows: int) -> np.ndarray:
    """NaN-pad a 2-D buffer along axis 0 to n_rows."""
    extra = n_rows - buffer.shape[0]
    if extra <= 0:
        return buffer
    return np.concatenate([buffer, np.full((extra, buffer.shape[1]), np.nan)], axis=0)


def merge_sex_contributions(
    per_sex: Sequence[Sequence[YearlyContribution]],
) -> List[YearlyContribution]:
    """Merge per-sex contribution lists year by year.

    A single subgroup is returned unchanged.
    """
    if not per_sex:
        raise ValueError("no subgroup contributions to merge")
    merged = list(per_sex[0])
    for group in per_sex[1:]:
        if len(group) != len(merged):
            raise ValueError("subgroups simulated different numbers of years")
        merged = [a.merge(b) for a, b in zip(merged, group)]
    return merged


# ═══════════════════════════════════════════════════════════════════════
# SINGLE YEAR
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SubgroupContext:
    """Everything one sex subgroup needs to simulate any year."""
    sex: str
    sex_code: int
    include_sex: bool
    prior_ages: np.ndarray
    known_incidence_rev: np.ndarray   # Observed counts, most recent year first
    n_reg_years: int
    incidence_model: IncidenceModel
    incidence_params: IncidenceParameters
    incidence_covariates: List[str]
    survival_model: SurvivalModel
    max_yearly_incidence: int
    cure_days: Optional[float] = None
    pop_survival: Optional[PopulationSurvival] = None
    check_incidence: bool = False     # Validate the first draw of each simulated year

    @property
    def mean_rate(self) -> float:
        if len(self.known_incidence_rev) == 0:
            return 0.0
        return float(np.mean(self.known_incidence_rev))


def prob_alive(
    survival_model: SurvivalModel,
    coefficients: pd.Series,
    rows: pd.DataFrame,
    elapsed_days: np.ndarray,
    ages: np.ndarray,
    cure_days: Optional[float] = None,
    pop_survival: Optional[PopulationSurvival] = None,
) -> np.ndarray:
    """Probability each simulated case is alive at the index date.

    With a cure time, cases past it survive the disease model up to
    cure_days and general-population mortality from their age at cure
    to their current age.
    """
    elapsed_days = np.asarray(elapsed_days, dtype=np.float64)
    if cure_days is None or pop_survival is None:
        return survival_model.predict_survival_probability(coefficients, rows, elapsed_days)

    model_time = np.minimum(elapsed_days, cure_days)
    p = survival_model.predict_survival_probability(coefficients, rows, model_time)
    cured = elapsed_days > cure_days
    if np.any(cured):
        age_at_cure = np.asarray(ages, dtype=np.float64)[cured] + cure_days / DAYS_PER_YEAR
        p = p.copy()
        p[cured] *= pop_survival.daily_survival_probability(
            age_at_cure, elapsed_days[cured] - cure_days,
        )
    return p


def _incident_cases(
    ctx: SubgroupContext,
    year: int,
    rng: np.random.Generator,
    check: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """Ages at diagnosis and days from diagnosis to the index date."""
    if year < ctx.n_reg_years:
        count = int(ctx.known_incidence_rev[year])
        if count == 0 or len(ctx.prior_ages) == 0:
            return np.empty(0), np.empty(0)
        ages = rng.choice(ctx.prior_ages, size=count, replace=True)
        offset = rng.uniform(0.0, DAYS_PER_YEAR, size=count)
    else:
        params = ctx.incidence_model.year_parameters(
            ctx.incidence_params, ctx.mean_rate, ctx.n_reg_years, rng,
        )
        pop = ctx.incidence_model.draw_incident_population(
            params, DAYS_PER_YEAR, ctx.incidence_covariates, rng,
        )
        if check:
            try:
                validate_incidence_output(pop, DAYS_PER_YEAR, ctx.incidence_covariates)
            except ValueError as e:
                raise ValueError(
                    f"incidence model '{ctx.incidence_model.name}' returned an invalid "
                    f"population for year {year}: {e}"
                ) from e
        if len(pop) == 0:
            return np.empty(0), np.empty(0)
        ages = np.asarray(pop.covariates['age'], dtype=np.float64)
        # Arrival t days into the year is (365 - t) days before its end
        offset = DAYS_PER_YEAR - np.asarray(pop.arrival_days, dtype=np.float64)
    return ages, year * DAYS_PER_YEAR + offset


def simulate_year(
    year: int,
    coefficients: pd.DataFrame,
    ctx: SubgroupContext,
    rng: np.random.Generator,
    cancel_event: Optional[threading.Event] = None,
) -> YearlyContribution:
    """Simulate one year offset for one subgroup across all draws."""
    n_draws = len(coefficients)
    out = YearlyContribution.empty(year, n_draws, ctx.max_yearly_incidence)
    for d in range(n_draws):
        if cancel_event is not None and cancel_event.is_set():
            raise EstimationCancelled(
                f"cancelled in year {year} ({ctx.sex}) at draw {d}/{n_draws}"
            )
        check = ctx.check_incidence and d == 0
        ages, elapsed = _incident_cases(ctx, year, rng, check=check)
        n = len(ages)
        if n == 0:
            continue
        rows = pd.DataFrame({'age': ages})
        if ctx.include_sex:
            rows['sex'] = float(ctx.sex_code)
        p = prob_alive(
            ctx.survival_model, coefficients.iloc[d], rows, elapsed, ages,
            cure_days=ctx.cure_days, pop_survival=ctx.pop_survival,
        )
        is_dead = rng.random(n) < (1.0 - p)
        alive = ~is_dead
        out.record(d, ages[alive] + elapsed[alive] / DAYS_PER_YEAR)
    return out


def simulate_subgroup(
    ctx: SubgroupContext,
    coefficients: pd.DataFrame,
    year_seeds: Sequence[np.random.SeedSequence],
    cancel_event: Optional[threading.Event] = None,
) -> List[YearlyContribution]:
    """Simulate year offsets 0..len(year_seeds)-1 for one subgroup.

    Year y draws from year_seeds[y] only, so the result matches the same
    years run as separate worker tasks.
    """
    return [
        simulate_year(year, coefficients, ctx, task_rng(seed), cancel_event)
        for year, seed in enumerate(year_seeds)
    ]


# ═══════════════════════════════════════════════════════════════════════
# TASK SCHEDULING
# ═══════════════════════════════════════════════════════════════════════

_WORKER_STATE: Dict[str, object] = {}


def _init_worker(contexts: Dict[str, SubgroupContext], coefficients: pd.DataFrame) -> None:
    _WORKER_STATE['contexts'] = contexts
    _WORKER_STATE['coefficients'] = coefficients


def _worker(args):
    """Multiprocessing worker for one (sex, year) task."""
    sex, year, seed = args
    ctx = _WORKER_STATE['contexts'][sex]
    return sex, year, simulate_year(year, _WORKER_STATE['coefficients'], ctx, task_rng(seed))


def run_year_tasks(
    contexts: Dict[str, SubgroupContext],
    coefficients: pd.DataFrame,
    n_years: int,
    seed: np.random.SeedSequence,
    n_cores: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, List[YearlyContribution]]:
    """Simulate every (sex, year) pair; task k always gets seed child k."""
    sexes = list(contexts)
    seeds = spawn_task_seeds(seed, len(sexes) * n_years)
    year_seeds = {
        sex: seeds[i * n_years:(i + 1) * n_years] for i, sex in enumerate(sexes)
    }

    if n_cores == 1:
        return {
            sex: simulate_subgroup(
                contexts[sex], coefficients, year_seeds[sex], cancel_event,
            )
            for sex in sexes
        }

    tasks = [
        (sex, year, year_seeds[sex][year])
        for sex in sexes
        for year in range(n_years)
    ]
    results: Dict[str, List[Optional[YearlyContribution]]] = {
        sex: [None] * n_years for sex in sexes
    }
    with Pool(processes=n_cores, initializer=_init_worker,
              initargs=(contexts, coefficients)) as pool:
        for sex, year, contrib in pool.imap_unordered(_worker, tasks):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Cancellation requested during year simulation")
                pool.terminate()
                raise EstimationCancelled("cancelled during year simulation")
            results[sex][year] = contrib
    return results


# ═══════════════════════════════════════════════════════════════════════
# SIMULATED PREVALENCE
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulatedPrevalence:
    """Simulated contributions to prevalence, merged over sex."""
    mean_yearly_contributions: np.ndarray   # (n_years,), year offset 0 first
    yearly_contributions: np.ndarray        # (n_years, n_draws)
    posterior_age: np.ndarray               # (capacity, n_draws, n_years)
    known_inc_rate: np.ndarray              # (n_reg_years,), oldest year first
    pop_mortality: Optional[Dict[str, PopulationSurvival]]
    n_bootstraps: int
    coefs: pd.DataFrame
    full_coefs: pd.Series
    bootstrap: Optional[BootstrapDraw] = None
    contributions: List[YearlyContribution] = field(default_factory=list)


def aggregate_contributions(contribs: Sequence[YearlyContribution]):
    """Stack merged contributions into per-draw counts and posterior ages."""
    counts = np.vstack([c.case_counts for c in contribs])
    capacity = max(c.capacity for c in contribs)
    post = np.stack([pad_rows(c.posterior_ages, capacity) for c in contribs], axis=2)
    return counts.mean(axis=1), counts, post


def required_covariates(
    survival_model: SurvivalModel,
    coefficients: pd.Series,
) -> Set[str]:
    names = set(survival_model.extract_covariate_names(coefficients))
    unsupported = names - SUPPORTED_COVARIATES
    if unsupported:
        raise RegistryError(
            f"survival model needs covariate(s) {sorted(unsupported)}; only "
            f"{sorted(SUPPORTED_COVARIATES)} can be simulated"
        )
    return names


def prevalence_simulated(
    registry: RegistryData,
    num_years_to_estimate: int,
    start,
    num_reg_years: int,
    cure: Optional[float] = 10,
    n_boot: int = 1000,
    max_yearly_incidence: int = 500,
    population_data: Optional[pd.DataFrame] = None,
    n_cores: int = 1,
    incidence_model: Optional[IncidenceModel] = None,
    survival_model: Optional[SurvivalModel] = None,
    seed: int = 42,
    min_success_fraction: float = 0.9,
    cancel_event: Optional[threading.Event] = None,
) -> SimulatedPrevalence:
    """Simulate prevalent cases for year offsets 0..num_years_to_estimate-1.

    Args:
        registry: Registry rows; rows diagnosed before `start` are ignored.
        num_years_to_estimate: Number of years to simulate.
        start: First day of the registry.
        num_reg_years: Registry years with observed incidence.
        cure: Cure time in years, or None to use the survival model only.
        n_boot: Bootstrap refits of the survival model.
        max_yearly_incidence: Initial posterior-age buffer rows.
        population_data: Life table (age, rate, sex); bundled default if None.
        n_cores: Worker processes for bootstrap and simulation.
        incidence_model, survival_model: Defaults are HomogeneousPoisson
            and WeibullSurvival.
        seed: Master seed.
        min_success_fraction: See fit_bootstrap.
        cancel_event: Cooperative cancellation.
    """
    if num_years_to_estimate < 1:
        raise ValueError(f"num_years_to_estimate must be >= 1, got {num_years_to_estimate}")
    incidence_model = incidence_model or HomogeneousPoisson()
    survival_model = survival_model or WeibullSurvival()

    start = to_date(start)
    registry = registry.subset(registry.entry >= start)
    if registry.n == 0:
        raise RegistryError(f"no registry entries on or after start date {start}")
    sex_levels = tuple(sorted(set(registry.sex)))
    registry = dataclasses.replace(registry, sex_levels=sex_levels)
    include_sex = len(sex_levels) == 2

    cure_days = None if cure is None else float(cure) * DAYS_PER_YEAR
    pop_mortality = None
    if cure_days is not None:
        table = default_life_table() if population_data is None else population_data
        pop_mortality = population_survival_functions(table, sex_levels)

    seeds = create_seed_hierarchy(seed)
    sample = registry.survival_frame(include_sex)

    logger.info("Fitting %d bootstrapped %s models on %d rows",
                n_boot, survival_model.name, len(sample))
    draws = fit_bootstrap(
        survival_model, sample, n_boot,
        seed=seeds['bootstrap'],
        shuffle_rng=task_rng(seeds['shuffle']),
        n_cores=n_cores,
        min_success_fraction=min_success_fraction,
        cancel_event=cancel_event,
    )
    full_coefs = survival_model.fit(sample)
    covariates = required_covariates(survival_model, full_coefs)
    incidence_covariates = sorted(covariates - {'sex'}) or ['age']

    bounds = determine_registry_years(start, num_reg_years)
    contexts: Dict[str, SubgroupContext] = {}
    known_total = np.zeros(num_reg_years, dtype=np.int64)
    for code, sex in enumerate(sex_levels):
        sub = registry.subset(registry.sex == sex)
        known = raw_incidence(sub.entry, start, num_reg_years)
        known_total += known
        pools = {name: getattr(sub, name) for name in incidence_covariates}
        params = incidence_model.fit(sub.entry, pools, start=bounds[0], end=bounds[-1])
        contexts[sex] = SubgroupContext(
            sex=sex,
            sex_code=code,
            include_sex=include_sex,
            prior_ages=sub.age,
            known_incidence_rev=known[::-1].copy(),
            n_reg_years=num_reg_years,
            incidence_model=incidence_model,
            incidence_params=params,
            incidence_covariates=incidence_covariates,
            survival_model=survival_model,
            max_yearly_incidence=max_yearly_incidence,
            cure_days=cure_days,
            pop_survival=None if pop_mortality is None else pop_mortality[sex],
            check_incidence=type(incidence_model) is not HomogeneousPoisson,
        )

    logger.info("Simulating %d years x %d draws x %d sex level(s)",
                num_years_to_estimate, draws.n_draws, len(sex_levels))
    per_sex = run_year_tasks(
        contexts, draws.coefficients, num_years_to_estimate,
        seed=seeds['simulation'], n_cores=n_cores, cancel_event=cancel_event,
    )
    merged = merge_sex_contributions([per_sex[s] for s in sex_levels])
    mean_yearly, counts, post = aggregate_contributions(merged)

    return SimulatedPrevalence(
        mean_yearly_contributions=mean_yearly,
        yearly_contributions=counts,
        posterior_age=post,
        known_inc_rate=known_total,
        pop_mortality=pop_mortality,
        n_bootstraps=draws.n_draws,
        coefs=draws.coefficients,
        full_coefs=full_coefs,
        bootstrap=draws,
        contributions=merged,
    )
