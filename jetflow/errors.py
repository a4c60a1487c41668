# jetflow/errors.py


class JetFlowError(Exception):
    """Base class for everything raised by jetflow."""


class InputError(JetFlowError, ValueError):
    """A particle record that cannot enter clustering (non-finite momentum)."""


class ClusteringInvariantError(JetFlowError, RuntimeError):
    """
    Clustering produced something that should be impossible: a NaN or negative
    distance, or a ghost that is not owned by exactly one jet.
    The event is discarded; processing continues.
    """


class ConfigurationError(JetFlowError, ValueError):
    """Invalid settings. Raised before any event is processed."""
