"""Post-diagnosis survival models.

Any survival model exposes three operations:
  - fit(sample) → coefficients (pandas Series indexed by parameter name)
  - extract_covariate_names(coefficients) → covariates the model needs
  - predict_survival_probability(coefficients, rows, times) → S(t | x)

`sample` is a DataFrame with `time` (days), `status` (1 = event) and one
column per covariate. Bootstrap resamples contain duplicate rows; the
likelihoods below are plain sums over rows, so duplicates just reweight.

Built-in families are accelerated failure time (AFT) models,
    log T = x'β + σ W,
with W standard extreme-value (Weibull) or logistic (log-logistic),
plus a Weibull mixture cure model. They are fitted by maximum likelihood
with scipy.optimize; covariates are centred during fitting for
conditioning and the intercept is mapped back afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional, Sequence, Set

import numpy as np
import pandas as pd
from scipy import optimize, special

from prevest.errors import SurvivalFitError


INTERCEPT = '(Intercept)'
LOG_SCALE = 'log(scale)'
LOGIT_CURE = 'logit(cure)'

MIN_TIME = 0.5         # days; survival times of 0 are floored here
GRAD_TOL = 1e-3        # per-row gradient tolerance when the optimizer reports failure


def _covariate_columns(sample: pd.DataFrame) -> List[str]:
    return [c for c in sample.columns if c not in ('time', 'status')]


class SurvivalModel(ABC):
    """Interface for survival models."""

    name = 'abstract'
    #: Coefficient names that are not covariates
    structural_params: Sequence[str] = ()

    @abstractmethod
    def fit(self, sample: pd.DataFrame) -> pd.Series:
        ...

    def extract_covariate_names(self, coefficients: pd.Series) -> Set[str]:
        return {name for name in coefficients.index
                if name not in self.structural_params}

    @abstractmethod
    def predict_survival_probability(
        self,
        coefficients: pd.Series,
        rows: pd.DataFrame,
        times,
    ) -> np.ndarray:
        ...


# ═══════════════════════════════════════════════════════════════════════
# ACCELERATED FAILURE TIME MODELS
# ═══════════════════════════════════════════════════════════════════════

class _AFTSurvival(SurvivalModel):
    """Shared machinery for parametric AFT families."""

    structural_params = (INTERCEPT, LOG_SCALE)

    # --- family-specific pieces ---------------------------------------
    @staticmethod
    def _loglik_terms(z: np.ndarray, d: np.ndarray):
        """Per-row log-likelihood in z (without the -log σ - log t Jacobian)
        and its derivative with respect to z."""
        raise NotImplementedError

    @staticmethod
    def _survival_z(z: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    # --- fitting -------------------------------------------------------
    def _design(self, sample: pd.DataFrame):
        covs = _covariate_columns(sample)
        X = sample[covs].to_numpy(dtype=np.float64)
        centre = X.mean(axis=0) if len(covs) else np.zeros(0)
        Xc = np.column_stack([np.ones(len(sample)), X - centre])
        y = np.log(np.maximum(sample['time'].to_numpy(dtype=np.float64), MIN_TIME))
        d = sample['status'].to_numpy(dtype=np.float64)
        return covs, centre, Xc, y, d

    def _negloglik(self, theta, Xc, y, d):
        beta, s = theta[:-1], theta[-1]
        sigma = np.exp(s)
        z = (y - Xc @ beta) / sigma
        ll, dll = self._loglik_terms(z, d)
        total = np.sum(ll) - s * np.sum(d)
        grad_beta = -(dll / sigma) @ Xc
        grad_s = np.sum(dll * -z) - np.sum(d)
        return -total, -np.append(grad_beta, grad_s)

    def _initial_theta(self, Xc, y):
        beta0, *_ = np.linalg.lstsq(Xc, y, rcond=None)
        resid = y - Xc @ beta0
        sd = np.std(resid)
        return np.append(beta0, np.log(sd) if sd > 0 else 0.0)

    def _check(self, res, n: int) -> None:
        if not np.all(np.isfinite(res.x)) or not np.isfinite(res.fun):
            raise SurvivalFitError(f"{self.name} fit produced non-finite estimates")
        if not res.success:
            jac = getattr(res, 'jac', None)
            if jac is None or np.max(np.abs(jac)) > GRAD_TOL * max(n, 1):
                raise SurvivalFitError(f"{self.name} fit did not converge: {res.message}")

    def fit(self, sample: pd.DataFrame) -> pd.Series:
        if len(sample) == 0 or sample['status'].sum() == 0:
            raise SurvivalFitError(f"{self.name} fit needs at least one observed event")
        covs, centre, Xc, y, d = self._design(sample)
        res = optimize.minimize(
            self._negloglik, self._initial_theta(Xc, y),
            args=(Xc, y, d), jac=True, method='BFGS',
        )
        self._check(res, len(sample))
        beta = res.x[:-1].copy()
        beta[0] -= np.dot(beta[1:], centre)
        return pd.Series(
            np.append(beta, res.x[-1]),
            index=[INTERCEPT] + covs + [LOG_SCALE],
        )

    # --- prediction ----------------------------------------------------
    def _linear_predictor(self, coefficients: pd.Series, rows: pd.DataFrame):
        covs = [c for c in coefficients.index if c not in self.structural_params]
        eta = np.full(len(rows), coefficients[INTERCEPT], dtype=np.float64)
        for c in covs:
            eta += coefficients[c] * rows[c].to_numpy(dtype=np.float64)
        return eta

    def predict_survival_probability(self, coefficients, rows, times):
        times = np.asarray(times, dtype=np.float64)
        if times.shape != (len(rows),):
            raise ValueError(
                f"need one time per covariate row, got {times.shape} for {len(rows)} rows"
            )
        eta = self._linear_predictor(coefficients, rows)
        sigma = np.exp(coefficients[LOG_SCALE])
        z = (np.log(np.maximum(times, MIN_TIME)) - eta) / sigma
        return np.clip(self._survival_z(z), 0.0, 1.0)


class WeibullSurvival(_AFTSurvival):
    """Weibull AFT: S(t|x) = exp(-(t / exp(x'β))^(1/σ))."""

    name = 'weibull'

    @staticmethod
    def _loglik_terms(z, d):
        ez = np.exp(z)
        return d * z - ez, d - ez

    @staticmethod
    def _survival_z(z):
        return np.exp(-np.exp(z))


class LogLogisticSurvival(_AFTSurvival):
    """Log-logistic AFT: S(t|x) = 1 / (1 + (t / exp(x'β))^(1/σ))."""

    name = 'loglogistic'

    @staticmethod
    def _loglik_terms(z, d):
        log1pez = np.logaddexp(0.0, z)
        p = special.expit(z)
        ll = d * (z - 2.0 * log1pez) - (1.0 - d) * log1pez
        dll = d * (1.0 - 2.0 * p) - (1.0 - d) * p
        return ll, dll

    @staticmethod
    def _survival_z(z):
        return special.expit(-z)


class MixtureCureWeibull(WeibullSurvival):
    """Weibull latency with a cured fraction π = expit(γ).

    S(t|x) = π + (1 - π) S_weibull(t|x). Fitted with numerical gradients.
    """

    name = 'mixture_cure'
    structural_params = (INTERCEPT, LOG_SCALE, LOGIT_CURE)

    def _mixture_negloglik(self, theta, Xc, y, d):
        beta, s, g = theta[:-2], theta[-2], theta[-1]
        z = (y - Xc @ beta) / np.exp(s)
        log_cured = special.log_expit(g)
        log_uncured = special.log_expit(-g)
        ll_event = log_uncured + z - np.exp(z) - s
        ll_cens = np.logaddexp(log_cured, log_uncured - np.exp(z))
        return -np.sum(np.where(d > 0, ll_event, ll_cens))

    def fit(self, sample):
        if len(sample) == 0 or sample['status'].sum() == 0:
            raise SurvivalFitError(f"{self.name} fit needs at least one observed event")
        covs, centre, Xc, y, d = self._design(sample)
        # Start from the plain Weibull fit with a small cured fraction
        start = optimize.minimize(
            self._negloglik, self._initial_theta(Xc, y),
            args=(Xc, y, d), jac=True, method='BFGS',
        )
        theta0 = np.append(start.x if np.all(np.isfinite(start.x))
                           else self._initial_theta(Xc, y), -2.0)
        res = optimize.minimize(
            self._mixture_negloglik, theta0, args=(Xc, y, d), method='BFGS',
        )
        self._check(res, len(sample))
        beta = res.x[:-2].copy()
        beta[0] -= np.dot(beta[1:], centre)
        return pd.Series(
            np.concatenate([beta, res.x[-2:]]),
            index=[INTERCEPT] + covs + [LOG_SCALE, LOGIT_CURE],
        )

    def predict_survival_probability(self, coefficients, rows, times):
        latency = super().predict_survival_probability(coefficients, rows, times)
        cured = special.expit(coefficients[LOGIT_CURE])
        return np.clip(cured + (1.0 - cured) * latency, 0.0, 1.0)


# ═══════════════════════════════════════════════════════════════════════
# EXTERNAL MODELS
# ═══════════════════════════════════════════════════════════════════════

class CallableSurvivalModel(SurvivalModel):
    """Adapter that turns a pair of callables into a SurvivalModel.

    Args:
        fit_fn: sample DataFrame → coefficients (Series or array).
        predict_fn: (coefficients, rows, times) → probabilities.
        coef_names: Names for array-valued coefficients.
        covariates: Covariates the model needs; defaults to all
            coefficient names that are not in `structural`.
        structural: Coefficient names that are not covariates.

    Callables must be picklable (module-level functions) when the
    estimation runs on more than one core.
    """

    name = 'callable'

    def __init__(
        self,
        fit_fn: Callable[[pd.DataFrame], object],
        predict_fn: Callable[[pd.Series, pd.DataFrame, np.ndarray], Iterable[float]],
        coef_names: Optional[Sequence[str]] = None,
        covariates: Optional[Iterable[str]] = None,
        structural: Sequence[str] = (),
    ):
        self.fit_fn = fit_fn
        self.predict_fn = predict_fn
        self.coef_names = list(coef_names) if coef_names is not None else None
        self.covariates = set(covariates) if covariates is not None else None
        self.structural_params = tuple(structural)

    def fit(self, sample):
        coefs = self.fit_fn(sample)
        if isinstance(coefs, pd.Series):
            out = coefs.astype(np.float64)
        else:
            values = np.asarray(coefs, dtype=np.float64).ravel()
            names = self.coef_names or [f'b{i}' for i in range(len(values))]
            if len(names) != len(values):
                raise SurvivalFitError(
                    f"fit_fn returned {len(values)} coefficients for "
                    f"{len(names)} names"
                )
            out = pd.Series(values, index=names)
        if not np.all(np.isfinite(out.to_numpy())):
            raise SurvivalFitError("external fit returned non-finite coefficients")
        return out

    def extract_covariate_names(self, coefficients):
        if self.covariates is not None:
            return set(self.covariates)
        return super().extract_covariate_names(coefficients)

    def predict_survival_probability(self, coefficients, rows, times):
        probs = np.asarray(
            self.predict_fn(coefficients, rows, np.asarray(times, dtype=np.float64)),
            dtype=np.float64,
        )
        if probs.shape != (len(rows),):
            raise ValueError(
                f"predict_fn returned shape {probs.shape}, expected ({len(rows)},)"
            )
        return np.clip(probs, 0.0, 1.0)


SURVIVAL_MODELS = {
    WeibullSurvival.name: WeibullSurvival,
    LogLogisticSurvival.name: LogLogisticSurvival,
    MixtureCureWeibull.name: MixtureCureWeibull,
}
