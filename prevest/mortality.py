"""General-population mortality for the cure model.

A life table gives an annual mortality rate (hazard, yr⁻¹) per integer
age and sex. PopulationSurvival turns one sex's rates into a continuous
survival function over days:

    S(a, d) = exp(-(H(365·a + d) - H(365·a)))

where H is the cumulative daily hazard, built on a daily grid with rates
linearly interpolated between ages and held constant past the last age.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Union

import numpy as np
import pandas as pd

from prevest.errors import LifeTableError
from prevest.registry import normalise_sex


LIFE_TABLE_COLUMNS = ('age', 'rate', 'sex')
MAX_TABLE_AGE = 100
GRID_EXTENSION_YEARS = 50   # Daily grid runs this far past the last tabulated age

# Gompertz–Makeham reference mortality, μ(x) = A + B·exp(C·x)
# Sex "0" = male, "1" = female.
GOMPERTZ_MAKEHAM = {
    '0': (5.0e-4, 3.0e-5, 0.098),
    '1': (3.0e-4, 1.5e-5, 0.100),
}


def default_life_table() -> pd.DataFrame:
    """Bundled reference life table (ages 0–100, sexes "0" and "1").

    Rates follow a Gompertz–Makeham law typical of a high-income
    population; supply a national table for real analyses.
    """
    ages = np.arange(MAX_TABLE_AGE + 1, dtype=np.float64)
    frames = []
    for sex, (a, b, c) in GOMPERTZ_MAKEHAM.items():
        frames.append(pd.DataFrame({
            'age': ages,
            'rate': np.minimum(a + b * np.exp(c * ages), 1.0),
            'sex': sex,
        }))
    return pd.concat(frames, ignore_index=True)


def load_life_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a life table CSV with columns age, rate, sex."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Life table not found: {path}")
    return pd.read_csv(path)


def validate_life_table(table: pd.DataFrame, sex_levels: Iterable[str]) -> pd.DataFrame:
    """Check columns and sex coverage; returns a copy with string sex labels.

    Raises:
        LifeTableError: Missing column, negative rate, or a registry sex
            level absent from the table.
    """
    missing = [c for c in LIFE_TABLE_COLUMNS if c not in table.columns]
    if missing:
        raise LifeTableError(
            f"life table must contain columns {list(LIFE_TABLE_COLUMNS)}; "
            f"missing {missing}"
        )
    table = table[list(LIFE_TABLE_COLUMNS)].dropna().copy()
    if (table['rate'] < 0).any():
        raise LifeTableError("life table column 'rate' must be >= 0")
    table['sex'] = normalise_sex(table['sex'].to_numpy())
    absent = sorted(set(sex_levels) - set(table['sex']))
    if absent:
        raise LifeTableError(
            f"sex level(s) {absent} present in the registry but not in the "
            f"life table (table has {sorted(set(table['sex']))})"
        )
    return table


class PopulationSurvival:
    """Daily survival probability for one sex."""

    def __init__(self, ages, rates, sex: str = ''):
        order = np.argsort(ages)
        self.ages = np.asarray(ages, dtype=np.float64)[order]
        self.rates = np.asarray(rates, dtype=np.float64)[order]
        if len(self.ages) == 0:
            raise LifeTableError(f"life table has no rows for sex '{sex}'")
        self.sex = sex

        n_days = int((self.ages[-1] + GRID_EXTENSION_YEARS) * 365) + 1
        self._grid = np.arange(n_days + 1, dtype=np.float64)
        daily_hazard = np.interp(self._grid[:-1] / 365.0, self.ages, self.rates) / 365.0
        self._cumhaz = np.concatenate([[0.0], np.cumsum(daily_hazard)])
        self._last_hazard = self.rates[-1] / 365.0

    def cumulative_hazard(self, days) -> np.ndarray:
        days = np.asarray(days, dtype=np.float64)
        end = self._grid[-1]
        inside = np.interp(np.minimum(days, end), self._grid, self._cumhaz)
        return inside + np.maximum(days - end, 0.0) * self._last_hazard

    def daily_survival_probability(self, age_at_start, days_elapsed) -> np.ndarray:
        """P(alive after days_elapsed | alive at age_at_start years)."""
        start_days = np.asarray(age_at_start, dtype=np.float64) * 365.0
        days_elapsed = np.maximum(np.asarray(days_elapsed, dtype=np.float64), 0.0)
        dh = self.cumulative_hazard(start_days + days_elapsed) - self.cumulative_hazard(start_days)
        return np.exp(-dh)

    __call__ = daily_survival_probability


def population_survival_functions(
    table: pd.DataFrame,
    sex_levels: Iterable[str],
) -> Dict[str, PopulationSurvival]:
    """One PopulationSurvival per registry sex level."""
    sex_levels = list(sex_levels)
    table = validate_life_table(table, sex_levels)
    out = {}
    for sex in sex_levels:
        sub = table[table['sex'] == sex]
        out[sex] = PopulationSurvival(sub['age'].to_numpy(), sub['rate'].to_numpy(), sex=sex)
    return out
