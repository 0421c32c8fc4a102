"""Shared synthetic registries for prevest tests."""

import numpy as np
import pandas as pd
import pytest


def _make_registry(
    n=200,
    n_years=5,
    start='2010-01-01',
    sexes=('0', '1'),
    scale_days=2500.0,
    sigma=1.0,
    seed=1,
):
    """Registry with uniform entry over n_years and Weibull survival.

    Follow-up ends at the index date (start + n_years), so every event
    date is on or before it and status 0 means alive at the index date.
    """
    rng = np.random.default_rng(seed)
    start_ts = pd.Timestamp(start)
    index_ts = start_ts + pd.DateOffset(years=n_years)
    span = (index_ts - start_ts).days

    entry_offset = np.sort(rng.integers(0, span, size=n))
    age = np.clip(rng.normal(65.0, 10.0, size=n), 20.0, 95.0)
    sex = rng.choice(list(sexes), size=n)
    surv = np.ceil(scale_days * rng.exponential(1.0, size=n) ** sigma)
    follow_up = span - entry_offset
    time = np.minimum(surv, follow_up).astype(float)
    status = (surv <= follow_up).astype(int)

    entry = start_ts + pd.to_timedelta(entry_offset, unit='D')
    event = entry + pd.to_timedelta(time, unit='D')
    return pd.DataFrame({
        'time': time,
        'status': status,
        'age': age,
        'sex': sex,
        'entrydate': entry,
        'eventdate': event,
    })


ROLES = {
    'time': 'time',
    'status': 'status',
    'age': 'age',
    'sex': 'sex',
    'entry': 'entrydate',
    'event': 'eventdate',
}


@pytest.fixture
def make_registry():
    return _make_registry


@pytest.fixture
def registry_df():
    return _make_registry()


@pytest.fixture
def roles():
    return dict(ROLES)
