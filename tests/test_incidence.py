"""Tests for prevest.incidence — Poisson incidence fit and arrival draws."""

import numpy as np
import pandas as pd
import pytest

from prevest.incidence import (
    HomogeneousPoisson,
    IncidenceParameters,
    IncidentPopulation,
    validate_incidence_output,
)


def _params(daily_rate=0.5, pools=None):
    if pools is None:
        pools = {'age': np.array([50.0, 60.0, 70.0]), 'sex': np.array([0.0, 1.0, 1.0])}
    return IncidenceParameters(daily_rate=daily_rate, n_observed=100,
                               elapsed_days=200.0, covariate_pools=pools)


class TestFit:
    def test_rate_over_window(self):
        entry = pd.date_range('2010-01-01', periods=100, freq='D')
        params = HomogeneousPoisson().fit(entry, start='2010-01-01', end='2010-05-01')
        # 2010-01-01..2010-04-10 all inside a 120-day window
        assert params.n_observed == 100
        assert params.elapsed_days == 120.0
        assert params.daily_rate == pytest.approx(100 / 120)
        assert params.yearly_rate == pytest.approx(100 / 120 * 365)

    def test_entries_outside_window_ignored(self):
        entry = ['2009-12-31', '2010-01-05', '2010-01-06', '2010-02-01']
        params = HomogeneousPoisson().fit(entry, start='2010-01-01', end='2010-02-01')
        assert params.n_observed == 2

    def test_covariate_pools_kept(self):
        entry = ['2010-01-01', '2010-03-01', '2010-06-01']
        params = HomogeneousPoisson().fit(entry, covariates={'age': [40, 50, 60]})
        np.testing.assert_array_equal(params.covariate_pools['age'], [40, 50, 60])

    def test_covariate_length_mismatch(self):
        with pytest.raises(ValueError, match="covariate 'age'"):
            HomogeneousPoisson().fit(['2010-01-01', '2010-02-01'], covariates={'age': [1]})

    def test_no_entries(self):
        with pytest.raises(ValueError, match="at least 1"):
            HomogeneousPoisson().fit([])

    def test_empty_window(self):
        with pytest.raises(ValueError, match="window"):
            HomogeneousPoisson().fit(['2010-01-01'])


class TestDraw:
    def test_arrivals_in_timeframe(self):
        pop = HomogeneousPoisson().draw_incident_population(
            _params(), 365, ['age', 'sex'], np.random.default_rng(0))
        assert len(pop) > 0
        assert np.all(pop.arrival_days >= 0)
        assert np.all(pop.arrival_days < 365)
        assert np.all(np.diff(pop.arrival_days) > 0)
        validate_incidence_output(pop, 365, ['age', 'sex'])

    def test_count_matches_rate(self):
        rng = np.random.default_rng(1)
        model = HomogeneousPoisson()
        counts = [len(model.draw_incident_population(_params(2.0), 365, [], rng))
                  for _ in range(200)]
        assert np.mean(counts) == pytest.approx(730, rel=0.02)

    def test_covariates_from_pool(self):
        pop = HomogeneousPoisson().draw_incident_population(
            _params(), 365, ['age'], np.random.default_rng(2))
        assert set(pop.covariates['age']) <= {50.0, 60.0, 70.0}
        assert len(pop.covariates['age']) == len(pop)

    def test_high_rate_extends_candidates(self):
        pop = HomogeneousPoisson().draw_incident_population(
            _params(50.0), 365, [], np.random.default_rng(3))
        assert len(pop) > 17000
        assert pop.arrival_days.max() < 365

    def test_zero_rate(self):
        pop = HomogeneousPoisson().draw_incident_population(
            _params(0.0), 365, ['age'], np.random.default_rng(0))
        assert len(pop) == 0
        assert len(pop.covariates['age']) == 0

    def test_missing_pool(self):
        with pytest.raises(ValueError, match="stage"):
            HomogeneousPoisson().draw_incident_population(
                _params(), 365, ['stage'], np.random.default_rng(0))

    def test_reproducible(self):
        model = HomogeneousPoisson()
        a = model.draw_incident_population(_params(), 365, ['age'], np.random.default_rng(9))
        b = model.draw_incident_population(_params(), 365, ['age'], np.random.default_rng(9))
        np.testing.assert_array_equal(a.arrival_days, b.arrival_days)
        np.testing.assert_array_equal(a.covariates['age'], b.covariates['age'])

    def test_lazy_iteration(self):
        pop = IncidentPopulation(arrival_days=np.array([1.0, 2.0]),
                                 covariates={'age': np.array([30.0, 40.0])})
        assert list(pop) == [(1.0, {'age': 30.0}), (2.0, {'age': 40.0})]


class TestYearParameters:
    def test_rate_varies_around_mean(self):
        rng = np.random.default_rng(4)
        model = HomogeneousPoisson()
        rates = [model.year_parameters(_params(), 100.0, 5, rng).yearly_rate
                 for _ in range(2000)]
        assert np.mean(rates) == pytest.approx(100.0, rel=0.01)
        assert np.std(rates) == pytest.approx(np.sqrt(100.0) / 5, rel=0.1)

    def test_clipped_at_zero(self):
        rng = np.random.default_rng(5)
        model = HomogeneousPoisson()
        rates = [model.year_parameters(_params(), 0.5, 1, rng).daily_rate
                 for _ in range(200)]
        assert min(rates) >= 0.0

    def test_pools_carried(self):
        params = _params()
        out = HomogeneousPoisson().year_parameters(params, 50.0, 3, np.random.default_rng(0))
        assert out.covariate_pools is params.covariate_pools


class TestValidateOutput:
    def test_out_of_range(self):
        pop = IncidentPopulation(arrival_days=np.array([1.0, 400.0]), covariates={})
        with pytest.raises(ValueError, match="arrival_days"):
            validate_incidence_output(pop, 365, [])

    def test_shape_mismatch(self):
        pop = IncidentPopulation(arrival_days=np.array([1.0, 2.0]),
                                 covariates={'age': np.array([50.0])})
        with pytest.raises(ValueError, match="shape"):
            validate_incidence_output(pop, 365, ['age'])

    def test_missing_covariate(self):
        pop = IncidentPopulation(arrival_days=np.array([1.0]), covariates={})
        with pytest.raises(ValueError, match="lacks covariate"):
            validate_incidence_output(pop, 365, ['sex'])

    def test_non_finite(self):
        pop = IncidentPopulation(arrival_days=np.array([1.0, np.nan]), covariates={})
        with pytest.raises(ValueError, match="finite"):
            validate_incidence_output(pop, 365, [])
