# gmm1d/_errors.py
"""Exceptions raised by the 1-D mixture code.

Numerical degeneracies (zero total density, a component with no
responsibility mass) are NOT errors: they surface as NaN / inf values.
"""


class GMMError(Exception):
    """Base class for every error raised by gmm1d."""


class InvalidParameter(GMMError, ValueError):
    """Inconsistent or out-of-range model parameters or options."""


class InsufficientData(GMMError, ValueError):
    """Not enough distinct observations for the requested number of components."""


class UnsupportedInputType(GMMError, TypeError):
    """Observations that are neither a flat 1-D sequence nor a Histogram."""
