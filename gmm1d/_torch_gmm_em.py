# gmm1d/_torch_gmm_em.py
"""One-dimensional Gaussian Mixture Model (GMM) EM in PyTorch.

Fits weights, means and variances of a K-component univariate mixture with
expectation-maximization, optionally regularized by two priors and optionally
seeded with k-means++.

Key choices:
- Every input is reduced once, at the API boundary, to a weighted sample
  (values, counts): raw data has count 1 per observation, a Histogram has one
  row per bin weighted by its count. E-step, M-step, log-likelihood and
  k-means++ are written once against that shape, so the histogram variant
  costs O(#bins) per EM iteration instead of O(#samples).
- Responsibilities are the component densities pdf_k(x) normalized per row;
  mixing weights enter the log-likelihood but not the responsibilities.
- Densities are evaluated directly (not in log space). Degenerate inputs are
  NOT patched: a row with zero total density gives NaN responsibilities and
  -inf log-likelihood, a component with zero responsibility mass gives NaN
  parameters.
- The variance accumulator starts at 10 * eps(dtype) so a component that
  captures a single distinct value keeps a positive variance.
- Parameters live in one immutable GMMParams snapshot; each update step
  builds a new snapshot and swaps it in with a single assignment.
- Randomness (sample, k-means++) goes through an injectable torch.Generator.

Priors (GMMOptions):
- separation prior: pulls means toward k * separation_prior (k = component
  index), recentered on the weighted barycenter. Assumes components are
  ordered by ascending mean; the order is not re-sorted between iterations.
- variance prior: pulls every variance toward variance_prior.
Both blend with alpha = weight_k / (weight_k + relevance): relevance 0 means
no effect, relevance -> inf pins the parameter to the prior.

Exposed fit diagnostics (sklearn-like):
- converged_, n_iter_, log_likelihood_, log_likelihoods_ (history), state_
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass, fields
from typing import Any, Dict, Hashable, List, Mapping, Optional, Union

import numpy as np
import torch
from torch.distributions import Normal

from ._errors import InsufficientData, InvalidParameter, UnsupportedInputType
from ._histogram import Histogram

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 200
LOG_LIKELIHOOD_TOL = 1e-7

Observations = Union[Sequence, np.ndarray, torch.Tensor, Histogram]


# ---------------------------
# Utilities
# ---------------------------

def _var_eps(dtype: torch.dtype) -> float:
    """Variance accumulator floor: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _is_positive_int(n: Any) -> bool:
    return isinstance(n, int) and not isinstance(n, bool) and n > 0


def _check_variances(variances: torch.Tensor) -> None:
    # NaN is let through on purpose: degenerate fits propagate, they don't raise.
    if bool((variances <= 0).any()):
        raise InvalidParameter(f"variances must be positive, got {variances.tolist()}")


def barycenter(values, weights) -> torch.Tensor:
    """Weighted average sum(values * weights) / sum(weights).

    weights need not sum to 1; they are renormalized by their own sum.
    """
    if not isinstance(values, torch.Tensor):
        values = torch.as_tensor(values, dtype=torch.float64)
    weights = torch.as_tensor(weights, dtype=values.dtype, device=values.device)
    return (values * weights).sum() / weights.sum()


@dataclass(frozen=True)
class _WeightedSample:
    """Observations as distinct values with multiplicities (both shape (N,))."""
    values: torch.Tensor
    counts: torch.Tensor

    def __len__(self) -> int:
        return int(self.values.shape[0])

    @property
    def total(self) -> torch.Tensor:
        return self.counts.sum()


def _as_weighted_sample(data: Observations, dtype: torch.dtype, device=None) -> _WeightedSample:
    """Flat 1-D data or a Histogram -> _WeightedSample. Anything else is rejected."""
    if isinstance(data, Histogram):
        values, counts = data.values_and_counts(dtype=dtype, device=device)
        return _WeightedSample(values, counts)

    if isinstance(data, (str, bytes)) or not isinstance(data, (Sequence, np.ndarray, torch.Tensor)):
        raise UnsupportedInputType(
            f"observations must be a 1-D sequence of numbers or a Histogram, got {type(data).__name__}"
        )
    try:
        values = torch.as_tensor(data, dtype=dtype, device=device)
    except (TypeError, ValueError, RuntimeError) as exc:
        raise UnsupportedInputType(f"observations must be numeric: {exc}") from exc
    if values.dim() != 1:
        raise UnsupportedInputType(f"observations must be 1-D, got shape {tuple(values.shape)}")
    return _WeightedSample(values, torch.ones_like(values))


# ---------------------------
# Options / parameters
# ---------------------------

@dataclass(frozen=True)
class GMMOptions:
    """Priors and seeding switch used by update_model / optimize."""
    variance_prior: Optional[float] = None
    variance_prior_relevance: float = 0.0
    separation_prior: Optional[float] = None
    separation_prior_relevance: float = 0.0
    initialize: bool = False

    def __post_init__(self) -> None:
        for name in ("variance_prior_relevance", "separation_prior_relevance"):
            value = getattr(self, name)
            if value is None or not value >= 0:
                raise InvalidParameter(f"{name} must be non-negative, got {value!r}")
        if self.variance_prior is not None and not self.variance_prior > 0:
            raise InvalidParameter(f"variance_prior must be positive, got {self.variance_prior!r}")

    @property
    def uses_variance_prior(self) -> bool:
        return bool(self.variance_prior) and bool(self.variance_prior_relevance)

    @property
    def uses_separation_prior(self) -> bool:
        return bool(self.separation_prior) and bool(self.separation_prior_relevance)

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "GMMOptions":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise InvalidParameter(f"unknown options: {unknown}; expected a subset of {sorted(known)}")
        return cls(**options)


@dataclass(frozen=True)
class GMMParams:
    weights: torch.Tensor    # (K,)
    means: torch.Tensor      # (K,)
    variances: torch.Tensor  # (K,)


# ---------------------------
# Gaussian components
# ---------------------------

def _gaussians(means: torch.Tensor, variances: torch.Tensor) -> Normal:
    """One Normal per component, batched: batch_shape == (K,).

    pdf_k(x) = log_prob(x).exp()[..., k], ppf_k(u) = icdf(u)[..., k].
    """
    _check_variances(variances)
    return Normal(loc=means, scale=variances.sqrt(), validate_args=False)


# ---------------------------
# EM steps
# ---------------------------

def _component_densities(values: torch.Tensor, gaussians: Normal) -> torch.Tensor:
    """pdf_k(x_i) for every observation and component -> (N, K)."""
    return gaussians.log_prob(values.unsqueeze(1)).exp()


def _responsibilities(densities: torch.Tensor) -> torch.Tensor:
    """E-step: normalize each row of the density matrix to sum to 1."""
    return densities / densities.sum(dim=1, keepdim=True)


def _log_likelihood_from_densities(
    densities: torch.Tensor,
    weights: torch.Tensor,
    counts: torch.Tensor,
) -> float:
    """sum_i counts_i * log(sum_k w_k pdf_k(x_i)); -inf as soon as a mixture density is 0."""
    observed = counts > 0
    p = (densities @ weights)[observed]  # (N,)
    if bool((p == 0).any()):
        return float("-inf")
    return float(torch.sum(counts[observed] * torch.log(p)).item())


def _apply_separation_prior(
    means: torch.Tensor,
    weights: torch.Tensor,
    separation: float,
    relevance: float,
) -> torch.Tensor:
    K = means.shape[0]
    prior_means = torch.arange(K, dtype=means.dtype, device=means.device) * separation
    prior_center = barycenter(prior_means, weights)
    center = barycenter(means, weights)
    alpha = weights / (weights + relevance)
    return center + alpha * (means - center) + (1.0 - alpha) * (prior_means - prior_center)


def _maximization_step(
    sample: _WeightedSample,
    params: GMMParams,
    resp: torch.Tensor,
    options: GMMOptions,
) -> GMMParams:
    """M-step producing a new GMMParams snapshot from responsibilities (N, K)."""
    values, counts = sample.values, sample.counts
    K = params.means.shape[0]
    assert resp.shape == (len(sample), K)

    # Empty bins contribute nothing, even when their responsibility row is NaN
    observed = counts.unsqueeze(1) > 0
    weighted_resp = torch.where(observed, resp * counts.unsqueeze(1), torch.zeros_like(resp))  # (N,K)
    nk = weighted_resp.sum(dim=0)  # (K,)

    weights = nk / sample.total
    means = (weighted_resp * values.unsqueeze(1)).sum(dim=0) / nk

    # the variance update below uses the blended means
    if options.uses_separation_prior:
        means = _apply_separation_prior(
            means, weights, options.separation_prior, options.separation_prior_relevance
        )

    diff = values.unsqueeze(1) - means.unsqueeze(0)  # (N,K)
    variances = (_var_eps(values.dtype) + (weighted_resp * diff * diff).sum(dim=0)) / nk

    if options.uses_variance_prior:
        alpha = weights / (weights + options.variance_prior_relevance)
        variances = alpha * variances + (1.0 - alpha) * options.variance_prior

    return GMMParams(weights=weights, means=means, variances=variances)


# ---------------------------
# Initialization helpers
# ---------------------------

def _draw_index(weights: torch.Tensor, generator: Optional[torch.Generator]) -> int:
    """Draw i with probability weights[i] / sum(weights) by cumulative scan.

    Picks the first index whose running sum exceeds the draw; falls back to the
    last index when rounding (or an all-zero weight vector) leaves it unresolved.
    """
    cum = torch.cumsum(weights, dim=0)
    r = torch.rand(1, generator=generator, dtype=weights.dtype, device=weights.device) * cum[-1]
    idx = int(torch.searchsorted(cum, r, right=True).item())
    return min(idx, weights.shape[0] - 1)


@torch.no_grad()
def _kmeans_plus_plus_init_means(
    sample: _WeightedSample,
    K: int,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Count-weighted k-means++ seeding. Returns K seeds sorted ascending."""
    observed = sample.counts > 0
    values, counts = sample.values[observed], sample.counts[observed]

    n_distinct = int(torch.unique(values).numel())
    if n_distinct < K:
        raise InsufficientData(
            f"need at least {K} distinct observations to seed {K} components, got {n_distinct}"
        )

    seeds = torch.empty((K,), dtype=values.dtype, device=values.device)
    seeds[0] = values[_draw_index(counts, generator)]

    # Closest squared distance to any chosen seed so far
    closest_d2 = (values - seeds[0]) ** 2
    for k in range(1, K):
        seeds[k] = values[_draw_index(counts * closest_d2, generator)]
        closest_d2 = torch.minimum(closest_d2, (values - seeds[k]) ** 2)

    return torch.sort(seeds).values


# ---------------------------
# Model wrapper
# ---------------------------

class EMState(enum.Enum):
    NOT_STARTED = "not_started"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


class TorchGaussianMixture1D:
    """Univariate Gaussian mixture whose parameters are refined in place by EM.

    Example:
        gmm = TorchGaussianMixture1D(3, means=[1.0, 5.0, 10.0])
        n_iter = gmm.optimize([1.2, 1.3, 7.4, 1.4, 14.3, 15.3, 1.0, 7.2])
        gmm.means, gmm.variances, gmm.weights
    """

    def __init__(
        self,
        n_components: int,
        weights=None,
        means=None,
        variances=None,
        options: Union[GMMOptions, Mapping[str, Any], None] = None,
        generator: Optional[torch.Generator] = None,
        device=None,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        if not _is_positive_int(n_components):
            raise InvalidParameter(f"n_components must be a positive int, got {n_components!r}")

        self.n_components = n_components
        self.device = device
        self.dtype = dtype
        self.generator = generator

        if options is None:
            options = GMMOptions()
        elif isinstance(options, Mapping):
            options = GMMOptions.from_dict(options)
        elif not isinstance(options, GMMOptions):
            raise InvalidParameter(f"options must be GMMOptions or a mapping, got {type(options).__name__}")
        self.options = options

        K = n_components
        if weights is None:
            weights = torch.full((K,), 1.0 / K, device=device, dtype=dtype)
        if means is None:
            means = torch.arange(K, device=device, dtype=dtype)
        if variances is None:
            variances = torch.ones((K,), device=device, dtype=dtype)

        arrays = {}
        for name, arr in (("weights", weights), ("means", means), ("variances", variances)):
            arr = self._to_device_dtype(arr, name)
            if arr.shape != (K,):
                raise InvalidParameter(
                    f"weights, means and variances must have n_components={K} elements, "
                    f"got {name} with shape {tuple(arr.shape)}"
                )
            arrays[name] = arr
        _check_variances(arrays["variances"])

        self._params = GMMParams(**arrays)

        self.state_ = EMState.NOT_STARTED
        self.converged_: bool = False
        self.n_iter_: int = 0
        self.log_likelihood_: float = float("-inf")
        self.log_likelihoods_: List[float] = []

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n_components={self.n_components}, "
            f"weights={self.weights.tolist()}, means={self.means.tolist()}, "
            f"variances={self.variances.tolist()})"
        )

    def _to_device_dtype(self, x, name: str = "value") -> torch.Tensor:
        try:
            return torch.as_tensor(x, dtype=self.dtype, device=self.device).clone()
        except (TypeError, ValueError, RuntimeError) as exc:
            raise InvalidParameter(f"{name} must be numeric: {exc}") from exc

    def _observations(self, data: Observations) -> _WeightedSample:
        return _as_weighted_sample(data, self.dtype, self.device)

    # -----------------------
    # Parameters
    # -----------------------

    @property
    def params(self) -> GMMParams:
        return self._params

    @property
    def weights(self) -> torch.Tensor:
        return self._params.weights

    @property
    def means(self) -> torch.Tensor:
        return self._params.means

    @property
    def variances(self) -> torch.Tensor:
        return self._params.variances

    def gaussians(self) -> Normal:
        """Batched Normal built from the current means/variances (rebuilt on every call)."""
        return _gaussians(self._params.means, self._params.variances)

    def model(self) -> Dict[str, Any]:
        """Flat record of the parameters, with plain Python lists."""
        return {
            "n_components": self.n_components,
            "weights": self.weights.tolist(),
            "means": self.means.tolist(),
            "variances": self.variances.tolist(),
        }

    @classmethod
    def from_model(
        cls,
        model: Mapping[str, Any],
        options: Union[GMMOptions, Mapping[str, Any], None] = None,
        **kwargs,
    ) -> "TorchGaussianMixture1D":
        missing = [k for k in ("n_components", "weights", "means", "variances") if k not in model]
        if missing:
            raise InvalidParameter(f"model record is missing {missing}")
        return cls(
            model["n_components"],
            weights=model["weights"],
            means=model["means"],
            variances=model["variances"],
            options=options,
            **kwargs,
        )

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def sample(self, n_samples: int) -> torch.Tensor:
        """Draw n_samples values from the mixture -> (n_samples,)."""
        if isinstance(n_samples, bool) or not isinstance(n_samples, int) or n_samples < 0:
            raise InvalidParameter(f"n_samples must be a non-negative int, got {n_samples!r}")

        p = self._params
        gaussians = self.gaussians()

        # Component per draw: first cumulative weight above u, last one if rounding runs out
        u = torch.rand(n_samples, generator=self.generator, dtype=self.dtype, device=self.device)
        cum = torch.cumsum(p.weights, dim=0)
        labels = torch.searchsorted(cum, u, right=True).clamp_max(self.n_components - 1)

        q = torch.rand(n_samples, generator=self.generator, dtype=self.dtype, device=self.device)
        quantiles = gaussians.icdf(q.unsqueeze(1))  # (n_samples,K)
        return quantiles.gather(1, labels.unsqueeze(1)).squeeze(1)

    @torch.no_grad()
    def membership(self, x: float) -> torch.Tensor:
        """Responsibilities of every component for one observation -> (K,)."""
        return self.memberships([float(x)])[0]

    @torch.no_grad()
    def memberships(self, data: Observations, gaussians: Optional[Normal] = None) -> torch.Tensor:
        """Responsibility matrix: (N, K) for flat data, (B, K) for a Histogram (key order)."""
        sample = self._observations(data)
        if gaussians is None:
            gaussians = self.gaussians()
        return _responsibilities(_component_densities(sample.values, gaussians))

    @torch.no_grad()
    def memberships_by_key(self, histogram: Histogram) -> Dict[Hashable, torch.Tensor]:
        if not isinstance(histogram, Histogram):
            raise UnsupportedInputType(f"expected a Histogram, got {type(histogram).__name__}")
        rows = self.memberships(histogram)
        return {key: rows[i] for i, key in enumerate(histogram.keys())}

    @torch.no_grad()
    def update_model(self, data: Observations, responsibilities=None) -> None:
        """One EM step; swaps in the new weights, means and variances."""
        sample = self._observations(data)
        if responsibilities is None:
            resp = _responsibilities(_component_densities(sample.values, self.gaussians()))
        else:
            resp = self._to_device_dtype(responsibilities, "responsibilities")
            if resp.shape != (len(sample), self.n_components):
                raise InvalidParameter(
                    f"responsibilities must have shape {(len(sample), self.n_components)}, "
                    f"got {tuple(resp.shape)}"
                )
        self._params = _maximization_step(sample, self._params, resp, self.options)

    @torch.no_grad()
    def log_likelihood(self, data: Observations) -> float:
        """Log-likelihood of flat data, or count-weighted log-likelihood of a Histogram."""
        sample = self._observations(data)
        densities = _component_densities(sample.values, self.gaussians())
        return _log_likelihood_from_densities(densities, self.weights, sample.counts)

    @torch.no_grad()
    def score_samples(self, data: Observations) -> torch.Tensor:
        """Per-row log mixture density log(sum_k w_k pdf_k(x)) -> (N,) or (B,)."""
        sample = self._observations(data)
        densities = _component_densities(sample.values, self.gaussians())
        return torch.log(densities @ self.weights)

    @torch.no_grad()
    def initialize(self, data: Observations) -> torch.Tensor:
        """k-means++ seeding of the means (weights and variances untouched)."""
        return self._initialize(self._observations(data))

    def _initialize(self, sample: _WeightedSample) -> torch.Tensor:
        means = _kmeans_plus_plus_init_means(sample, self.n_components, self.generator)
        logger.debug("k-means++ seeds: %s", means.tolist())
        p = self._params
        self._params = GMMParams(weights=p.weights, means=means, variances=p.variances)
        return means.clone()

    @torch.no_grad()
    def optimize(
        self,
        data: Observations,
        max_iterations: int = MAX_ITERATIONS,
        tol: float = LOG_LIKELIHOOD_TOL,
    ) -> int:
        """Run EM until |delta log-likelihood| <= tol or max_iterations steps.

        Returns the number of iterations executed (== max_iterations when the
        fit did not converge).

        Raises InsufficientData for empty observations (an empty sequence, or
        a Histogram whose total count is 0); the model is left untouched.
        """
        if not _is_positive_int(max_iterations):
            raise InvalidParameter(f"max_iterations must be a positive int, got {max_iterations!r}")
        if not tol >= 0:
            raise InvalidParameter(f"tol must be non-negative, got {tol!r}")

        sample = self._observations(data)
        if not bool(sample.total > 0):
            raise InsufficientData("cannot fit a mixture to zero observations")
        if self.options.initialize:
            self._initialize(sample)

        self.state_ = EMState.ITERATING
        prev_ll = float("-inf")
        change = float("inf")
        history: List[float] = []
        resp: Optional[torch.Tensor] = None

        n_iter = 0
        while n_iter < max_iterations and change > tol:
            if resp is None:
                resp = _responsibilities(_component_densities(sample.values, self.gaussians()))
            self._params = _maximization_step(sample, self._params, resp, self.options)

            densities = _component_densities(sample.values, self.gaussians())
            resp = _responsibilities(densities)
            ll = _log_likelihood_from_densities(densities, self.weights, sample.counts)

            # -inf -> -inf yields NaN, which ends the loop like a converged fit
            change = abs(ll - prev_ll)
            prev_ll = ll
            history.append(ll)
            n_iter += 1
            logger.debug("EM iter %d: log-likelihood=%.10g change=%.3e", n_iter, ll, change)

        self.converged_ = not change > tol
        self.state_ = EMState.CONVERGED if self.converged_ else EMState.MAX_ITERATIONS_REACHED
        self.n_iter_ = n_iter
        self.log_likelihood_ = prev_ll
        self.log_likelihoods_ = history

        if self.converged_:
            logger.info("EM converged after %d iterations (log-likelihood=%.6f)", n_iter, prev_ll)
        else:
            logger.warning(
                "EM stopped at max_iterations=%d without converging (last change=%.3e, tol=%.1e)",
                max_iterations, change, tol,
            )
        return n_iter
