"""Registry data access: column roles, registry years, counted prevalence.

The registry is a table with one row per diagnosed subject. Six roles
must be resolved to columns: survival time (days), event status (0/1),
age at diagnosis (years), sex, entry (diagnosis) date and event date.

Roles can be given as a mapping or as a survival formula:

    Surv(time, status) ~ age(age) + sex(sex) + entry(entrydate) + event(eventdate)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from prevest.config import REQUIRED_ROLES
from prevest.errors import RegistryError


logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365          # Simulation year length (days)
MEAN_YEAR_DAYS = 365.25      # Used to count complete registry years
MAX_SEX_LEVELS = 2

_SURV_RE = re.compile(r'^\s*Surv\(\s*(\w+)\s*,\s*(\w+)\s*\)\s*~\s*(.+)$')
_TERM_RE = re.compile(r'^(\w+)\(\s*(\w+)\s*\)$')


# ═══════════════════════════════════════════════════════════════════════
# ROLE RESOLUTION
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RegistryRoles:
    """Column name for each registry role."""
    time: str
    status: str
    age: str
    sex: str
    entry: str
    event: str

    def as_dict(self) -> Dict[str, str]:
        return {r: getattr(self, r) for r in REQUIRED_ROLES}


def parse_formula(formula: str) -> Dict[str, str]:
    """Parse `Surv(t, s) ~ age(a) + sex(x) + entry(e) + event(v)` into roles.

    Raises:
        RegistryError: Malformed formula, duplicate role, or a bare
            covariate term (additional covariates are not supported).
    """
    m = _SURV_RE.match(formula)
    if m is None:
        raise RegistryError(
            f"formula must look like 'Surv(time, status) ~ age(..) + sex(..) + "
            f"entry(..) + event(..)', got '{formula}'"
        )
    roles = {'time': m.group(1), 'status': m.group(2)}
    for term in m.group(3).split('+'):
        term = term.strip()
        tm = _TERM_RE.match(term)
        if tm is None or tm.group(1) not in ('age', 'sex', 'entry', 'event'):
            raise RegistryError(
                f"unsupported formula term '{term}': additional covariates "
                f"are not supported"
            )
        role, column = tm.group(1), tm.group(2)
        if role in roles:
            raise RegistryError(f"role '{role}' given more than once in formula")
        roles[role] = column
    return roles


def resolve_roles(
    spec: Union[str, Mapping[str, str], RegistryRoles],
    columns: Optional[Sequence[str]] = None,
) -> RegistryRoles:
    """Resolve a role specification to column names.

    Args:
        spec: Formula string, role → column mapping, or RegistryRoles.
        columns: If given, every resolved column must be present.

    Raises:
        RegistryError: If a role is unresolved, unknown, or its column is
            missing from `columns`.
    """
    if isinstance(spec, RegistryRoles):
        roles = spec.as_dict()
    elif isinstance(spec, str):
        roles = parse_formula(spec)
    else:
        roles = dict(spec)

    missing = [r for r in REQUIRED_ROLES if not roles.get(r)]
    if missing:
        raise RegistryError(f"unresolved registry role(s): {missing}")
    extra = sorted(set(roles) - set(REQUIRED_ROLES))
    if extra:
        raise RegistryError(
            f"extraneous role(s) {extra}: additional covariates are not supported"
        )
    if columns is not None:
        absent = {r: c for r, c in roles.items() if c not in columns}
        if absent:
            raise RegistryError(f"registry has no column(s) for roles {absent}")
    return RegistryRoles(**{r: roles[r] for r in REQUIRED_ROLES})


# ═══════════════════════════════════════════════════════════════════════
# DATE HELPERS
# ═══════════════════════════════════════════════════════════════════════

def to_dates(values) -> np.ndarray:
    """Coerce dates (strings, Timestamps, datetime64) to datetime64[D]."""
    return pd.to_datetime(np.asarray(values)).values.astype('datetime64[D]')


def to_date(value) -> np.datetime64:
    return np.datetime64(pd.Timestamp(value).date(), 'D')


def determine_registry_years(start, num_reg_years: int) -> np.ndarray:
    """Boundaries of the registry years: `num_reg_years + 1` anniversaries.

    The last element is the index date.
    """
    if num_reg_years < 1:
        raise ValueError(f"num_reg_years must be >= 1, got {num_reg_years}")
    start_ts = pd.Timestamp(start)
    return np.array(
        [np.datetime64((start_ts + pd.DateOffset(years=i)).date(), 'D')
         for i in range(num_reg_years + 1)],
        dtype='datetime64[D]',
    )


def default_num_reg_years(entry, start) -> int:
    """Number of complete registry years between start and the last entry."""
    entry = to_dates(entry)
    elapsed = (entry.max() - to_date(start)).astype(int)
    return int(np.floor(elapsed / MEAN_YEAR_DAYS))


def raw_incidence(entry, start, num_reg_years: int) -> np.ndarray:
    """Incident cases per registry year, oldest year first."""
    entry = to_dates(entry)
    bounds = determine_registry_years(start, num_reg_years)
    return np.array(
        [np.sum((entry >= bounds[i]) & (entry < bounds[i + 1]))
         for i in range(num_reg_years)],
        dtype=np.int64,
    )


# ═══════════════════════════════════════════════════════════════════════
# REGISTRY DATA
# ═══════════════════════════════════════════════════════════════════════

def normalise_sex(values) -> np.ndarray:
    """Sex labels as strings; integral numbers lose their '.0'."""
    out = []
    for v in values:
        if isinstance(v, (int, np.integer)) and not isinstance(v, bool):
            out.append(str(int(v)))
        elif isinstance(v, (float, np.floating)) and float(v).is_integer():
            out.append(str(int(v)))
        else:
            out.append(str(v))
    return np.array(out, dtype=object)


@dataclass(frozen=True)
class RegistryData:
    """Validated, read-only view of registry rows.

    Arrays are aligned by row. Sex levels are sorted strings; the survival
    models see them coded 0/1 in that order.
    """
    time: np.ndarray      # float64, days from entry to event/censoring
    status: np.ndarray    # int8, 1 = event observed
    age: np.ndarray       # float64, years at diagnosis
    sex: np.ndarray       # object (str)
    entry: np.ndarray     # datetime64[D]
    event: np.ndarray     # datetime64[D]
    sex_levels: Tuple[str, ...]

    @property
    def n(self) -> int:
        return len(self.time)

    @property
    def sex_codes(self) -> np.ndarray:
        lookup = {lvl: i for i, lvl in enumerate(self.sex_levels)}
        return np.array([lookup[s] for s in self.sex], dtype=np.int8)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        roles: Union[str, Mapping[str, str], RegistryRoles],
    ) -> 'RegistryData':
        """Build from a DataFrame and a role specification.

        Rows with a missing value in any role column are dropped.

        Raises:
            RegistryError: Unresolved roles, more than two sex levels,
                negative survival times, or an empty registry.
        """
        r = resolve_roles(roles, list(df.columns))
        cols = [r.time, r.status, r.age, r.sex, r.entry, r.event]
        clean = df[cols].dropna()
        n_dropped = len(df) - len(clean)
        if n_dropped:
            logger.info("Dropped %d registry rows with missing values", n_dropped)
        if len(clean) == 0:
            raise RegistryError("registry has no complete rows")

        time = clean[r.time].to_numpy(dtype=np.float64)
        if np.any(time < 0):
            raise RegistryError(f"column '{r.time}' (time) must be >= 0")
        status = clean[r.status].to_numpy().astype(np.int8)
        if not np.isin(status, (0, 1)).all():
            raise RegistryError(f"column '{r.status}' (status) must be 0/1")

        sex = normalise_sex(clean[r.sex].to_numpy())
        levels = tuple(sorted(set(sex)))
        if len(levels) > MAX_SEX_LEVELS:
            raise RegistryError(
                f"column '{r.sex}' (sex) has {len(levels)} levels {list(levels)}; "
                f"at most {MAX_SEX_LEVELS} are supported"
            )

        entry = to_dates(clean[r.entry])
        event = to_dates(clean[r.event])
        gap = np.abs((event - entry).astype(np.float64) - time)
        n_inconsistent = int(np.sum(gap > 1.0))
        if n_inconsistent:
            logger.warning(
                "%d registry rows have survival time inconsistent with "
                "entry/event dates", n_inconsistent,
            )

        return cls(
            time=time,
            status=status,
            age=clean[r.age].to_numpy(dtype=np.float64),
            sex=sex,
            entry=entry,
            event=event,
            sex_levels=levels,
        )

    def subset(self, mask: np.ndarray) -> 'RegistryData':
        """Rows where mask is True; sex levels are kept."""
        return RegistryData(
            time=self.time[mask],
            status=self.status[mask],
            age=self.age[mask],
            sex=self.sex[mask],
            entry=self.entry[mask],
            event=self.event[mask],
            sex_levels=self.sex_levels,
        )

    def survival_frame(self, include_sex: bool) -> pd.DataFrame:
        """time/status plus covariates, the input to SurvivalModel.fit."""
        frame = pd.DataFrame({
            'time': self.time,
            'status': self.status.astype(np.int64),
            'age': self.age,
        })
        if include_sex:
            frame['sex'] = self.sex_codes.astype(np.float64)
        return frame


# ═══════════════════════════════════════════════════════════════════════
# COUNTED PREVALENCE
# ═══════════════════════════════════════════════════════════════════════

def prevalence_counted(
    entry,
    event,
    status,
    start=None,
    num_reg_years: Optional[int] = None,
) -> np.ndarray:
    """Prevalent cases at the index date by registry year of diagnosis.

    A case counts if it was diagnosed in the registry year and has no
    event on or before the index date.

    Returns:
        Array of length num_reg_years, oldest year first.

    Raises:
        ValueError: If the three inputs differ in length.
    """
    if len({len(entry), len(event), len(status)}) > 1:
        raise ValueError(
            f"entry, event and status must have the same length, got "
            f"{len(entry)}, {len(event)}, {len(status)}"
        )
    frame = pd.DataFrame({'entry': entry, 'event': event, 'status': status}).dropna()
    entry = to_dates(frame['entry'])
    event = to_dates(frame['event'])
    status = frame['status'].to_numpy().astype(np.int64)

    if start is None:
        start = entry.min()
    if num_reg_years is None:
        num_reg_years = default_num_reg_years(entry, start)

    bounds = determine_registry_years(start, num_reg_years)
    index_date = bounds[-1]
    status_at_index = np.where(event > index_date, 0, status)

    per_year = raw_incidence(entry, start, num_reg_years)
    n_events = np.array(
        [status_at_index[(entry >= bounds[i]) & (entry < bounds[i + 1])].sum()
         for i in range(num_reg_years)],
        dtype=np.int64,
    )
    return per_year - n_events
