"""Configuration system for prevest.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides

Sections map 1:1 to YAML top-level keys. Unknown keys are ignored so
that one YAML file can carry notes for other tools.
"""

from __future__ import annotations

import dataclasses
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

REQUIRED_ROLES = ('time', 'status', 'age', 'sex', 'entry', 'event')


@dataclass
class RegistrySection:
    """Column roles in the registry table."""
    roles: Dict[str, str] = field(default_factory=lambda: {
        'time': 'time',
        'status': 'status',
        'age': 'age',
        'sex': 'sex',
        'entry': 'entrydate',
        'event': 'eventdate',
    })


@dataclass
class EstimationSection:
    """What to estimate and how to report it."""
    num_years_to_estimate: List[int] = field(default_factory=lambda: [10])
    population_size: Optional[float] = None   # Population at risk (required)
    start: Optional[str] = None               # ISO date; None = earliest entry
    num_reg_years: Optional[int] = None       # None = all complete registry years
    cure: Optional[float] = 10.0              # Cure time (years); None = no cure model
    level: float = 0.95                       # Two-sided confidence level
    precision: int = 2                        # Decimal places in reported estimates
    proportion: float = 100e3                 # Report prevalence per this many people


@dataclass
class BootstrapSection:
    """Survival-model bootstrap."""
    n_boot: int = 1000
    min_success_fraction: float = 0.9   # Fraction of refits that must converge


@dataclass
class SimulationSection:
    """Monte Carlo simulation control."""
    seed: int = 42
    max_yearly_incidence: int = 500   # Initial posterior-age buffer rows; grows on demand
    n_cores: int = 1
    always_simulate: bool = False     # Simulate even when all years are counted


@dataclass
class ModelSection:
    """Incidence and survival model families."""
    incidence: str = 'poisson'
    survival: str = 'weibull'


@dataclass
class LifeTableSection:
    """Population mortality used by the cure model."""
    file: Optional[str] = None   # CSV with age, rate, sex; None = bundled table


@dataclass
class PrevalenceConfig:
    """Complete estimation configuration.

    Load from YAML via `load_config()`.
    """
    registry: RegistrySection = field(default_factory=RegistrySection)
    estimation: EstimationSection = field(default_factory=EstimationSection)
    bootstrap: BootstrapSection = field(default_factory=BootstrapSection)
    simulation: SimulationSection = field(default_factory=SimulationSection)
    models: ModelSection = field(default_factory=ModelSection)
    life_table: LifeTableSection = field(default_factory=LifeTableSection)


SECTION_MAP = {
    'registry': RegistrySection,
    'estimation': EstimationSection,
    'bootstrap': BootstrapSection,
    'simulation': SimulationSection,
    'models': ModelSection,
    'life_table': LifeTableSection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> PrevalenceConfig:
    """Convert a merged YAML dict to a PrevalenceConfig."""
    sections = {}
    for key, cls in SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    est = sections['estimation']
    if isinstance(est.num_years_to_estimate, int):
        est.num_years_to_estimate = [est.num_years_to_estimate]
    if est.start is not None:
        est.start = str(est.start)

    # Partial role maps override only the roles they name
    roles = dict(RegistrySection().roles)
    roles.update(sections['registry'].roles or {})
    sections['registry'].roles = roles

    return PrevalenceConfig(**sections)


def validate_config(config: PrevalenceConfig,
                    require_population: bool = True) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Every message names the offending field and its constraint.
    """
    from prevest.incidence import INCIDENCE_MODELS
    from prevest.survival import SURVIVAL_MODELS

    # Registry roles
    missing = [r for r in REQUIRED_ROLES if not config.registry.roles.get(r)]
    if missing:
        raise ValueError(f"registry.roles missing column for role(s): {missing}")
    extra = set(config.registry.roles) - set(REQUIRED_ROLES)
    if extra:
        raise ValueError(
            f"registry.roles has unknown role(s) {sorted(extra)}; "
            f"additional covariates are not supported"
        )

    est = config.estimation
    if not est.num_years_to_estimate:
        raise ValueError("estimation.num_years_to_estimate must not be empty")
    for n in est.num_years_to_estimate:
        if int(n) != n or n < 1:
            raise ValueError(
                f"estimation.num_years_to_estimate values must be integers >= 1, got {n}"
            )
    if est.population_size is None:
        if require_population:
            raise ValueError("estimation.population_size is required")
    elif est.population_size <= 0:
        raise ValueError(
            f"estimation.population_size must be positive, got {est.population_size}"
        )
    if est.num_reg_years is not None and est.num_reg_years < 1:
        raise ValueError(
            f"estimation.num_reg_years must be >= 1, got {est.num_reg_years}"
        )
    if est.cure is not None and est.cure < 0:
        raise ValueError(f"estimation.cure must be >= 0 or null, got {est.cure}")
    if not (0.0 < est.level < 1.0):
        raise ValueError(f"estimation.level must be in (0, 1), got {est.level}")
    if est.precision < 0:
        raise ValueError(f"estimation.precision must be >= 0, got {est.precision}")
    if est.proportion <= 0:
        raise ValueError(f"estimation.proportion must be positive, got {est.proportion}")

    bs = config.bootstrap
    if bs.n_boot < 1:
        raise ValueError(f"bootstrap.n_boot must be >= 1, got {bs.n_boot}")
    if not (0.0 < bs.min_success_fraction <= 1.0):
        raise ValueError(
            f"bootstrap.min_success_fraction must be in (0, 1], "
            f"got {bs.min_success_fraction}"
        )

    sim = config.simulation
    if sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if sim.max_yearly_incidence < 1:
        raise ValueError(
            f"simulation.max_yearly_incidence must be >= 1, "
            f"got {sim.max_yearly_incidence}"
        )
    if sim.n_cores < 1:
        raise ValueError(f"simulation.n_cores must be >= 1, got {sim.n_cores}")

    if config.models.incidence not in INCIDENCE_MODELS:
        raise ValueError(
            f"models.incidence must be one of {sorted(INCIDENCE_MODELS)}, "
            f"got '{config.models.incidence}'"
        )
    if config.models.survival not in SURVIVAL_MODELS:
        raise ValueError(
            f"models.survival must be one of {sorted(SURVIVAL_MODELS)}, "
            f"got '{config.models.survival}'"
        )

    if config.life_table.file is not None and not os.path.isfile(config.life_table.file):
        warnings.warn(
            f"life_table.file '{config.life_table.file}' does not exist. "
            f"Life table loading will fail at runtime.",
            UserWarning,
            stacklevel=2,
        )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> PrevalenceConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> PrevalenceConfig:
    """Return a PrevalenceConfig with all default values.

    population_size has no sensible default and is left unset.
    """
    config = PrevalenceConfig()
    validate_config(config, require_population=False)
    return config
