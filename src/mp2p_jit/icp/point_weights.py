# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Run-length encoded weight overrides for point-to-point pairings.

A run list [(2, a), (3, b), (5, c)] assigns weight a to pairings 0-1,
b to 2-4 and c to 5-9. Block lookup goes through the prefix sums of the
counts with a binary search, so it does not depend on visiting pairings in
order. Zero-count runs are allowed and own no index.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from ..core.errors import PointWeightsError

WeightRuns = Sequence[Tuple[int, float]]


def validate_point_weights(runs: WeightRuns, num_pairings: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Check `runs` against the number of point-to-point pairings.

    Returns the (counts, weights) arrays; raises PointWeightsError on a
    negative count or weight, or when the counts do not add up to
    `num_pairings`.
    """
    counts = np.asarray([int(c) for c, _ in runs], dtype=np.int64)
    weights = np.asarray([float(w) for _, w in runs], dtype=np.float64)

    if np.any(counts < 0):
        raise PointWeightsError(f"Point weight runs must have non-negative counts, got {counts.tolist()}")
    if np.any(weights < 0.0):
        raise PointWeightsError(f"Point weights must be non-negative, got {weights.tolist()}")
    total = int(counts.sum())
    if total != num_pairings:
        raise PointWeightsError(
            f"Point weight runs cover {total} pairings but there are "
            f"{num_pairings} point-to-point pairings"
        )
    return counts, weights


def point_weight_block_index(runs: WeightRuns, index: int) -> int:
    """Index of the run that owns point-to-point pairing `index`."""
    counts = np.asarray([int(c) for c, _ in runs], dtype=np.int64)
    ends = np.cumsum(counts)
    if index < 0 or len(ends) == 0 or index >= ends[-1]:
        raise IndexError(f"Pairing index {index} is not covered by the weight runs")
    # First block whose end lies strictly past index; skips zero-count blocks
    return int(np.searchsorted(ends, index, side="right"))


def expand_point_weights(runs: WeightRuns, num_pairings: int) -> np.ndarray:
    """Per-pairing weight array of length `num_pairings`."""
    counts, weights = validate_point_weights(runs, num_pairings)
    return np.repeat(weights, counts)
