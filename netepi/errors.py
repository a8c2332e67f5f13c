"""Exception taxonomy for netepi.

Configuration problems (ParameterError) are raised before any run starts.
Everything deriving from SimulationError is fatal to the run in which it
occurs; the driver records it on that run's record and moves on to the
next run.
"""


class ParameterError(ValueError):
    """Missing, unknown, invalid or inconsistent configuration."""


class SimulationError(RuntimeError):
    """Base class for errors that abort a single run."""


class InvalidTransitionError(SimulationError):
    """A transition does not match the recorded state or the model type."""


class AlreadyInactiveError(SimulationError):
    """An individual was deactivated a second time."""


class NetworkConsistencyError(SimulationError):
    """The contact network references an individual that is not active."""


class PopulationConsistencyError(SimulationError):
    """Aggregate compartment counts disagree with per-individual states."""


class RunTimeoutError(SimulationError):
    """A run exceeded its wall-clock budget (checked between steps only)."""
