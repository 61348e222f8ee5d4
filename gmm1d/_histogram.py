# gmm1d/_histogram.py
"""Counted (optionally binned) aggregation of scalar observations.

A Histogram lets EM run over distinct bins instead of raw samples: every
per-observation sum becomes a count-weighted sum over bins, so one EM
iteration costs O(#bins) instead of O(#samples).

Bin keys:
- without explicit bins: the observation rounded half-up to an int
  (an implicit unit-width bin), representative value = float(key)
- with bins {key: (lo, hi)}: the first half-open interval [lo, hi) that
  contains the observation, representative value = (lo + hi) / 2
"""

from __future__ import annotations

import math
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

import torch

from ._errors import InvalidParameter

Bins = Mapping[Hashable, Sequence[float]]


class Histogram:
    """Observation counts keyed by bin, with a running total."""

    def __init__(
        self,
        counts: Optional[Mapping[Hashable, float]] = None,
        bins: Optional[Bins] = None,
    ) -> None:
        self.bins: Optional[Dict[Hashable, Tuple[float, float]]] = None
        if bins is not None:
            self.bins = {}
            for key, interval in bins.items():
                lo, hi = (float(v) for v in interval)
                if not lo <= hi:
                    raise InvalidParameter(f"bin {key!r} must satisfy lo <= hi, got [{lo}, {hi})")
                self.bins[key] = (lo, hi)

        self.counts: Dict[Hashable, float] = {}
        for key, count in (counts or {}).items():
            if count < 0:
                raise InvalidParameter(f"count for bin {key!r} must be non-negative, got {count}")
            if self.bins is not None and key not in self.bins:
                raise InvalidParameter(f"count given for undefined bin {key!r}")
            self.counts[key] = count

        self.total = sum(self.counts.values())

    def __len__(self) -> int:
        return len(self.counts)

    def __repr__(self) -> str:
        return f"Histogram(counts={self.counts!r}, bins={self.bins!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Histogram):
            return NotImplemented
        return self.counts == other.counts and self.bins == other.bins

    @staticmethod
    def classify(x: float, bins: Optional[Bins] = None) -> Optional[Hashable]:
        """Bin key for x, or None when x falls outside every bin."""
        x = float(x)
        if bins is None:
            if not math.isfinite(x):
                return None
            # round half up, not Python's round-half-even
            return int(math.floor(x + 0.5))
        for key, (lo, hi) in bins.items():
            if lo <= x < hi:
                return key
        return None

    def add(self, x: float) -> Optional[Hashable]:
        key = self.classify(x, self.bins)
        if key is None:
            return None
        self.counts[key] = self.counts.get(key, 0) + 1
        self.total += 1
        return key

    @classmethod
    def from_data(cls, values: Iterable[float], bins: Optional[Bins] = None) -> "Histogram":
        hist = cls(bins=bins)
        if isinstance(values, torch.Tensor):
            values = values.reshape(-1).tolist()
        for x in values:
            hist.add(x)
        return hist

    def value(self, key: Hashable) -> float:
        """Representative value of a bin (NaN for a key with no defined bin)."""
        if self.bins is None:
            return float(key)
        interval = self.bins.get(key)
        if interval is None:
            return float("nan")
        lo, hi = interval
        return (lo + hi) / 2

    def keys(self) -> List[Hashable]:
        return list(self.counts)

    def flatten(self) -> List[float]:
        """Expand counts back into representative values, grouped by key."""
        out: List[float] = []
        for key, count in self.counts.items():
            out.extend([self.value(key)] * int(count))
        return out

    def values_and_counts(
        self,
        dtype: torch.dtype = torch.float64,
        device=None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """(values, counts) tensors of shape (B,), one row per bin in key order."""
        keys = self.keys()
        values = torch.tensor([self.value(k) for k in keys], dtype=dtype, device=device)
        counts = torch.tensor([float(self.counts[k]) for k in keys], dtype=dtype, device=device)
        return values, counts
