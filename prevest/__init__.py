"""prevest: point prevalence estimation from registry data.

Combines prevalence counted directly from a disease registry with Monte
Carlo simulation of the years the registry does not cover:
  - Incidence process (homogeneous Poisson by default)
  - Post-diagnosis survival (parametric AFT models, bootstrapped)
  - Optional cure-time blending against general-population mortality
  - Point estimate + confidence interval per requested number of years

References:
  - Crouch et al. (2014), "Determining disease prevalence from incidence
    and survival using simulation techniques", Cancer Epidemiology 38(2).
"""

__version__ = "0.1.0"
