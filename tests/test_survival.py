"""Tests for prevest.survival — parametric survival fits and prediction."""

import numpy as np
import pandas as pd
import pytest
from scipy import special

from prevest.errors import SurvivalFitError
from prevest.survival import (
    INTERCEPT,
    LOG_SCALE,
    LOGIT_CURE,
    SURVIVAL_MODELS,
    CallableSurvivalModel,
    LogLogisticSurvival,
    MixtureCureWeibull,
    WeibullSurvival,
)


def _aft_sample(n=3000, intercept=7.0, b_age=-0.02, sigma=0.8,
                noise='weibull', cure=0.0, seed=0):
    """log T = intercept + b_age·age + σW, administratively censored."""
    rng = np.random.default_rng(seed)
    age = rng.normal(60.0, 10.0, size=n)
    if noise == 'weibull':
        w = np.log(rng.exponential(1.0, size=n))
    else:
        w = rng.logistic(size=n)
    t = np.exp(intercept + b_age * age + sigma * w)
    t[rng.random(n) < cure] = np.inf
    c = rng.uniform(200.0, 4000.0, size=n)
    return pd.DataFrame({
        'time': np.minimum(t, c),
        'status': (t <= c).astype(int),
        'age': age,
    })


# ── Weibull ──────────────────────────────────────────────────────────

class TestWeibull:
    def test_parameter_recovery(self):
        coefs = WeibullSurvival().fit(_aft_sample())
        assert list(coefs.index) == [INTERCEPT, 'age', LOG_SCALE]
        assert coefs[INTERCEPT] == pytest.approx(7.0, abs=0.3)
        assert coefs['age'] == pytest.approx(-0.02, abs=0.008)
        assert coefs[LOG_SCALE] == pytest.approx(np.log(0.8), abs=0.08)

    def test_covariate_names(self):
        model = WeibullSurvival()
        coefs = model.fit(_aft_sample(n=500))
        assert model.extract_covariate_names(coefs) == {'age'}

    def test_survival_monotone_in_time(self):
        model = WeibullSurvival()
        coefs = model.fit(_aft_sample(n=500))
        rows = pd.DataFrame({'age': np.full(50, 65.0)})
        probs = model.predict_survival_probability(coefs, rows, np.linspace(0, 5000, 50))
        assert np.all((probs >= 0) & (probs <= 1))
        assert np.all(np.diff(probs) <= 0)

    def test_older_patients_survive_less(self):
        model = WeibullSurvival()
        coefs = model.fit(_aft_sample(n=1000))
        rows = pd.DataFrame({'age': [40.0, 80.0]})
        young, old = model.predict_survival_probability(coefs, rows, [365.0, 365.0])
        assert young > old

    def test_duplicate_rows_tolerated(self):
        sample = _aft_sample(n=300)
        resample = sample.iloc[np.random.default_rng(1).integers(0, 300, 300)]
        coefs = WeibullSurvival().fit(resample.reset_index(drop=True))
        assert np.all(np.isfinite(coefs.to_numpy()))

    def test_zero_times_floored(self):
        sample = _aft_sample(n=300)
        sample.loc[:5, 'time'] = 0.0
        coefs = WeibullSurvival().fit(sample)
        assert np.all(np.isfinite(coefs.to_numpy()))

    def test_no_events(self):
        sample = _aft_sample(n=100)
        sample['status'] = 0
        with pytest.raises(SurvivalFitError, match="event"):
            WeibullSurvival().fit(sample)

    def test_times_rows_mismatch(self):
        model = WeibullSurvival()
        coefs = model.fit(_aft_sample(n=300))
        with pytest.raises(ValueError, match="one time per"):
            model.predict_survival_probability(coefs, pd.DataFrame({'age': [50.0, 60.0]}),
                                               [1.0])

    def test_intercept_only(self):
        sample = _aft_sample(n=500)[['time', 'status']]
        coefs = WeibullSurvival().fit(sample)
        assert list(coefs.index) == [INTERCEPT, LOG_SCALE]


# ── Log-logistic ─────────────────────────────────────────────────────

class TestLogLogistic:
    def test_parameter_recovery(self):
        coefs = LogLogisticSurvival().fit(_aft_sample(noise='logistic', sigma=0.5, seed=3))
        assert coefs['age'] == pytest.approx(-0.02, abs=0.008)
        assert coefs[LOG_SCALE] == pytest.approx(np.log(0.5), abs=0.08)

    def test_median_at_scale(self):
        model = LogLogisticSurvival()
        coefs = pd.Series({INTERCEPT: np.log(1000.0), LOG_SCALE: 0.0})
        rows = pd.DataFrame(index=range(1))
        assert model.predict_survival_probability(coefs, rows, [1000.0])[0] == \
            pytest.approx(0.5)


# ── Mixture cure ─────────────────────────────────────────────────────

class TestMixtureCure:
    def test_cure_fraction_recovered(self):
        sample = _aft_sample(n=2000, cure=0.3, seed=5)
        model = MixtureCureWeibull()
        coefs = model.fit(sample)
        assert LOGIT_CURE in coefs.index
        assert special.expit(coefs[LOGIT_CURE]) == pytest.approx(0.3, abs=0.06)
        assert model.extract_covariate_names(coefs) == {'age'}

    def test_survival_plateaus_at_cure_fraction(self):
        model = MixtureCureWeibull()
        coefs = pd.Series({INTERCEPT: np.log(300.0), LOG_SCALE: 0.0,
                           LOGIT_CURE: special.logit(0.25)})
        rows = pd.DataFrame(index=range(2))
        probs = model.predict_survival_probability(coefs, rows, [0.0, 1e6])
        assert probs[0] == pytest.approx(1.0, abs=1e-2)
        assert probs[1] == pytest.approx(0.25)


# ── External callables ───────────────────────────────────────────────

def _exp_fit(sample):
    return [sample['status'].sum() / sample['time'].sum()]


def _exp_predict(coefs, rows, times):
    return np.exp(-coefs['rate'] * times)


class TestCallableModel:
    def test_array_coefficients_named(self):
        model = CallableSurvivalModel(_exp_fit, _exp_predict, coef_names=['rate'],
                                      structural=['rate'])
        coefs = model.fit(_aft_sample(n=200))
        assert list(coefs.index) == ['rate']
        assert model.extract_covariate_names(coefs) == set()
        probs = model.predict_survival_probability(coefs, pd.DataFrame(index=range(3)),
                                                   [0.0, 100.0, 1000.0])
        assert probs[0] == 1.0
        assert np.all(np.diff(probs) < 0)

    def test_explicit_covariates(self):
        model = CallableSurvivalModel(_exp_fit, _exp_predict, coef_names=['rate'],
                                      covariates=['age'])
        assert model.extract_covariate_names(pd.Series({'rate': 0.1})) == {'age'}

    def test_name_count_mismatch(self):
        model = CallableSurvivalModel(_exp_fit, _exp_predict, coef_names=['a', 'b'])
        with pytest.raises(SurvivalFitError, match="coefficients"):
            model.fit(_aft_sample(n=100))

    def test_non_finite_rejected(self):
        model = CallableSurvivalModel(lambda s: [np.nan], _exp_predict)
        with pytest.raises(SurvivalFitError, match="non-finite"):
            model.fit(_aft_sample(n=100))

    def test_bad_prediction_shape(self):
        model = CallableSurvivalModel(_exp_fit, lambda c, r, t: [0.5],
                                      coef_names=['rate'])
        with pytest.raises(ValueError, match="shape"):
            model.predict_survival_probability(pd.Series({'rate': 0.1}),
                                               pd.DataFrame(index=range(2)), [1.0, 2.0])

    def test_probabilities_clipped(self):
        model = CallableSurvivalModel(_exp_fit, lambda c, r, t: t - 1.0,
                                      coef_names=['rate'])
        probs = model.predict_survival_probability(pd.Series({'rate': 0.1}),
                                                   pd.DataFrame(index=range(3)),
                                                   [0.0, 1.5, 5.0])
        np.testing.assert_array_equal(probs, [0.0, 0.5, 1.0])


def test_registry_of_models():
    assert set(SURVIVAL_MODELS) == {'weibull', 'loglogistic', 'mixture_cure'}
