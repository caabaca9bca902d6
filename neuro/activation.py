"""
activation.py
~~~~~~~~~~~~~

Logistic sigmoid and its derivative.
"""

import numpy as np


def sigmoid(x):
    """
    Logistic function 1 / (1 + e^-x).

    Only e^-|x| is ever evaluated, so large magnitudes cannot overflow.
    Scalars give a float back, arrays give an array of the same shape.
    """
    x = np.asarray(x, dtype=float)
    z = np.exp(-np.abs(x))
    out = np.where(x >= 0, 1.0 / (1.0 + z), z / (1.0 + z))
    if out.ndim == 0:
        return float(out)
    return out


def sigmoid_derivative(y):
    # y is the sigmoid output, not the pre-activation
    return y * (1.0 - y)
