from ._errors import GMMError, InsufficientData, InvalidParameter, UnsupportedInputType
from ._histogram import Histogram
from ._torch_gmm_em import (
    LOG_LIKELIHOOD_TOL,
    MAX_ITERATIONS,
    EMState,
    GMMOptions,
    GMMParams,
    TorchGaussianMixture1D,
    barycenter,
)

__all__ = [
    "TorchGaussianMixture1D",
    "GMMOptions",
    "GMMParams",
    "EMState",
    "Histogram",
    "barycenter",
    "MAX_ITERATIONS",
    "LOG_LIKELIHOOD_TOL",
    "GMMError",
    "InvalidParameter",
    "InsufficientData",
    "UnsupportedInputType",
]
