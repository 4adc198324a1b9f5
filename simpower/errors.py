"""
Error taxonomy for SimPower.

Configuration and schema errors are fatal for the call that raised them.
``FitDidNotConverge`` is the only per-trial error: the simulation loop
records it as a missing p-value and keeps going.
"""

__all__ = [
    "SimPowerError",
    "InvalidConfiguration",
    "ShapeMismatch",
    "UnknownFactor",
    "MissingColumn",
    "UnsupportedFamily",
    "FitDidNotConverge",
]


class SimPowerError(Exception):
    """Base class for all SimPower errors."""

    pass


class InvalidConfiguration(SimPowerError, ValueError):
    """Malformed design, size, effect or simulation setting."""

    pass


class ShapeMismatch(SimPowerError, ValueError):
    """Mean/SD table or correlation matrix disagrees with the factor levels."""

    pass


class UnknownFactor(SimPowerError, KeyError):
    """A named grouping or design factor is absent from the dataset."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class MissingColumn(SimPowerError, KeyError):
    """A column required by the model formula is absent from the dataset."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class UnsupportedFamily(SimPowerError, ValueError):
    """The requested model family is not available."""

    pass


class FitDidNotConverge(SimPowerError, RuntimeError):
    """A model fit failed (non-convergence, singular system, non-finite likelihood)."""

    pass
