"""
Assignment Solver: minimum-cost bipartite matching.

Every matcher reduces its correspondence problem to a cost matrix (rows =
template features, columns = detections) and calls ``solve_assignment``.
Costs are matcher-specific; lower means more similar.

The heavy lifting is done by scipy's ``linear_sum_assignment`` (a shortest
augmenting path variant of the Hungarian algorithm), which accepts
rectangular matrices directly and is deterministic for a given input.

Usage:
    from partmatch.matching.assignment import solve_assignment

    assignment = solve_assignment(cost)   # assignment[i] = column or -1
"""

import logging
from typing import Sequence, Union

import numpy as np
from scipy.optimize import linear_sum_assignment

logger = logging.getLogger(__name__)

# Substitute for NaN / inf entries so the solver always sees a finite matrix
UNASSIGNABLE_COST = 1e6

UNASSIGNED = -1


def solve_assignment(cost_matrix: Union[np.ndarray, Sequence[Sequence[float]]]) -> np.ndarray:
    """
    Solve the minimum-cost assignment for an n x m cost matrix.

    Args:
        cost_matrix: (n, m) costs. n and m may differ; NaN or infinite
                     entries are treated as very expensive, not forbidden.

    Returns:
        Integer array of length n. ``assignment[i]`` is the column assigned
        to row i, or -1 when row i is left unmatched (only possible when
        n > m or the matrix is empty). No column appears twice.
    """
    cost = np.asarray(cost_matrix, dtype=np.float64)
    if cost.ndim != 2:
        if cost.size == 0:
            return np.full(0, UNASSIGNED, dtype=int)
        raise ValueError(f"cost matrix must be 2-D, got shape {cost.shape}")

    n_rows, n_cols = cost.shape
    assignment = np.full(n_rows, UNASSIGNED, dtype=int)
    if n_rows == 0 or n_cols == 0:
        return assignment

    if not np.all(np.isfinite(cost)):
        cost = np.where(np.isfinite(cost), cost, UNASSIGNABLE_COST)

    rows, cols = linear_sum_assignment(cost)
    assignment[rows] = cols

    logger.debug(
        f"Assignment {n_rows}x{n_cols}: {len(rows)} pairs, "
        f"total cost {cost[rows, cols].sum():.4f}"
    )
    return assignment


def total_cost(cost_matrix: Union[np.ndarray, Sequence[Sequence[float]]],
               assignment: Sequence[int]) -> float:
    """Sum of the costs selected by ``assignment`` (unmatched rows add nothing)."""
    cost = np.asarray(cost_matrix, dtype=np.float64)
    return float(sum(cost[i, j] for i, j in enumerate(assignment) if j >= 0))
