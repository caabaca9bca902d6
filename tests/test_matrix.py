"""
test_matrix.py
~~~~~~~~~~~~~~

Unit tests for the matrix constructors.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuro import matrix


@pytest.mark.unit
class TestRandom:

    def test_shape_and_bounds(self):
        m = matrix.random(4, 7, -1.0, 1.0, np.random.default_rng(0))

        assert m.shape == (4, 7)
        assert m.dtype == np.float64
        assert np.all(m >= -1.0)
        assert np.all(m < 1.0)

    def test_seeded_generators_agree(self):
        a = matrix.random(3, 3, 0.0, 5.0, np.random.default_rng(42))
        b = matrix.random(3, 3, 0.0, 5.0, np.random.default_rng(42))
        assert np.array_equal(a, b)

    def test_entries_vary(self):
        m = matrix.random(10, 10, -1.0, 1.0, np.random.default_rng(1))
        assert len(np.unique(m)) == 100

    def test_works_without_generator(self):
        assert matrix.random(2, 2, 0.0, 1.0).shape == (2, 2)

    @pytest.mark.parametrize("rows,cols", [(0, 3), (3, 0), (-1, 2)])
    def test_rejects_empty_shapes(self, rows, cols):
        with pytest.raises(ValueError):
            matrix.random(rows, cols, 0.0, 1.0)

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ValueError):
            matrix.random(2, 2, 1.0, -1.0)


@pytest.mark.unit
class TestFilled:

    def test_zero_fill(self):
        m = matrix.filled(3, 2, 0.0)
        assert m.shape == (3, 2)
        assert not m.any()

    def test_constant_fill(self):
        assert np.all(matrix.filled(2, 5, 0.75) == 0.75)

    def test_rejects_empty_shapes(self):
        with pytest.raises(ValueError):
            matrix.filled(0, 1, 0.0)
