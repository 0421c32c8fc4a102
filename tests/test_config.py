"""Tests for prevest.config — configuration loading and validation."""

import warnings

import pytest
import yaml

from prevest.config import (
    BootstrapSection,
    EstimationSection,
    PrevalenceConfig,
    deep_merge,
    default_config,
    load_config,
    validate_config,
)


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}

    def test_empty_override(self):
        assert deep_merge({'a': 1}, {}) == {'a': 1}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        assert isinstance(default_config(), PrevalenceConfig)

    def test_default_values(self):
        config = default_config()
        assert config.estimation.cure == 10.0
        assert config.estimation.level == 0.95
        assert config.estimation.proportion == 100e3
        assert config.bootstrap.n_boot == 1000
        assert config.simulation.max_yearly_incidence == 500
        assert config.simulation.seed == 42
        assert config.models.incidence == 'poisson'
        assert config.models.survival == 'weibull'

    def test_population_size_left_unset(self):
        assert default_config().estimation.population_size is None

    def test_default_roles_complete(self):
        roles = default_config().registry.roles
        assert set(roles) == {'time', 'status', 'age', 'sex', 'entry', 'event'}


# ── YAML loading tests ───────────────────────────────────────────────

def _write(path, content):
    with open(path, 'w') as f:
        yaml.dump(content, f)
    return path


class TestLoadConfig:
    def test_load_from_yaml(self, tmp_path):
        path = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 5e5, 'num_years_to_estimate': [3, 8]},
            'simulation': {'seed': 7},
        })
        config = load_config(path)
        assert config.estimation.population_size == 5e5
        assert config.estimation.num_years_to_estimate == [3, 8]
        assert config.simulation.seed == 7
        # Unspecified sections get defaults
        assert config.bootstrap.n_boot == 1000

    def test_scalar_years_become_list(self, tmp_path):
        path = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 1e6, 'num_years_to_estimate': 5},
        })
        assert load_config(path).estimation.num_years_to_estimate == [5]

    def test_scenario_override(self, tmp_path):
        base = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 1e6, 'cure': 10},
        })
        scen = _write(tmp_path / "scenario.yaml", {'estimation': {'cure': None}})
        config = load_config(base, scenario_path=scen)
        assert config.estimation.cure is None
        assert config.estimation.population_size == 1e6

    def test_overrides_applied_last(self, tmp_path):
        base = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 1e6},
            'bootstrap': {'n_boot': 100},
        })
        config = load_config(base, overrides={'bootstrap': {'n_boot': 10}})
        assert config.bootstrap.n_boot == 10

    def test_partial_roles_keep_defaults(self, tmp_path):
        base = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 1e6},
            'registry': {'roles': {'entry': 'diagnosis_date'}},
        })
        roles = load_config(base).registry.roles
        assert roles['entry'] == 'diagnosis_date'
        assert roles['event'] == 'eventdate'

    def test_unknown_keys_ignored(self, tmp_path):
        base = _write(tmp_path / "base.yaml", {
            'estimation': {'population_size': 1e6, 'not_a_field': 3},
            'notes': {'author': 'x'},
        })
        config = load_config(base)
        assert not hasattr(config.estimation, 'not_a_field')

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_population_size_rejected(self, tmp_path):
        base = _write(tmp_path / "base.yaml", {'simulation': {'seed': 1}})
        with pytest.raises(ValueError, match="population_size"):
            load_config(base)


# ── Validation tests ─────────────────────────────────────────────────

def _config(**estimation):
    est = EstimationSection(population_size=1e6)
    for k, v in estimation.items():
        setattr(est, k, v)
    return PrevalenceConfig(estimation=est)


class TestValidation:
    def test_valid(self):
        validate_config(_config())

    @pytest.mark.parametrize("years", [[0], [3, -1], [2.5], []])
    def test_bad_years(self, years):
        with pytest.raises(ValueError, match="num_years_to_estimate"):
            validate_config(_config(num_years_to_estimate=years))

    @pytest.mark.parametrize("level", [0.0, 1.0, 1.5])
    def test_bad_level(self, level):
        with pytest.raises(ValueError, match="estimation.level"):
            validate_config(_config(level=level))

    def test_negative_cure(self):
        with pytest.raises(ValueError, match="estimation.cure"):
            validate_config(_config(cure=-1))

    def test_null_cure_allowed(self):
        validate_config(_config(cure=None))

    def test_bad_population(self):
        with pytest.raises(ValueError, match="population_size"):
            validate_config(_config(population_size=0))

    def test_bad_n_boot(self):
        config = _config()
        config.bootstrap = BootstrapSection(n_boot=0)
        with pytest.raises(ValueError, match="bootstrap.n_boot"):
            validate_config(config)

    def test_bad_success_fraction(self):
        config = _config()
        config.bootstrap.min_success_fraction = 0.0
        with pytest.raises(ValueError, match="min_success_fraction"):
            validate_config(config)

    def test_unknown_survival_model(self):
        config = _config()
        config.models.survival = 'gompertz'
        with pytest.raises(ValueError, match="models.survival"):
            validate_config(config)

    def test_unknown_incidence_model(self):
        config = _config()
        config.models.incidence = 'hawkes'
        with pytest.raises(ValueError, match="models.incidence"):
            validate_config(config)

    def test_missing_role(self):
        config = _config()
        del config.registry.roles['event']
        with pytest.raises(ValueError, match="event"):
            validate_config(config)

    def test_extra_role_rejected(self):
        config = _config()
        config.registry.roles['stage'] = 'stage'
        with pytest.raises(ValueError, match="covariates"):
            validate_config(config)

    def test_bad_n_cores(self):
        config = _config()
        config.simulation.n_cores = 0
        with pytest.raises(ValueError, match="n_cores"):
            validate_config(config)

    def test_missing_life_table_file_warns(self, tmp_path):
        config = _config()
        config.life_table.file = str(tmp_path / "missing.csv")
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            validate_config(config)
        assert any("life_table.file" in str(x.message) for x in w)
