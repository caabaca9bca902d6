"""
matrix.py
~~~~~~~~~

Constructors for the 2D arrays backing weight and momentum matrices.
"""

from typing import Optional

import numpy as np


def _check_shape(rows: int, cols: int) -> None:
    if rows < 1 or cols < 1:
        raise ValueError(
            f"Matrix dimensions must be positive, got {rows}x{cols}"
        )


def random(
    rows: int,
    cols: int,
    low: float,
    high: float,
    rng: Optional[np.random.Generator] = None
) -> np.ndarray:
    """
    Build a rows x cols matrix of independent uniform values.

    Args:
        rows: Number of rows
        cols: Number of columns
        low: Inclusive lower bound
        high: Exclusive upper bound
        rng: Random source; a fresh unseeded generator if omitted

    Returns:
        np.ndarray: float64 array of shape (rows, cols)
    """
    _check_shape(rows, cols)
    if low > high:
        raise ValueError(f"low ({low}) must not exceed high ({high})")

    if rng is None:
        rng = np.random.default_rng()
    return rng.uniform(low, high, size=(rows, cols))


def filled(rows: int, cols: int, value: float) -> np.ndarray:
    """Build a rows x cols matrix with every entry equal to `value`."""
    _check_shape(rows, cols)
    return np.full((rows, cols), value, dtype=float)
