"""Exception hierarchy for prevest.

Input problems are raised before any simulation work starts; model-fit
and cancellation errors surface from the bootstrap stage.
"""


class PrevalenceError(Exception):
    """Base class for all prevest errors."""


class RegistryError(PrevalenceError, ValueError):
    """Registry data or role specification is invalid."""


class LifeTableError(PrevalenceError, ValueError):
    """Population life table is malformed or misses a sex level."""


class SurvivalFitError(PrevalenceError):
    """A survival model failed to converge on a (resampled) dataset."""


class BootstrapError(PrevalenceError):
    """Too few bootstrap refits succeeded to accept the draw matrix."""

    def __init__(self, n_success: int, n_required: int, n_boot: int):
        self.n_success = n_success
        self.n_required = n_required
        self.n_boot = n_boot
        super().__init__(
            f"only {n_success}/{n_boot} bootstrap fits converged, "
            f"need at least {n_required} (bootstrap.min_success_fraction)"
        )


class EstimationCancelled(PrevalenceError):
    """Raised when the caller sets the cancel event mid-run."""
