"""
neuro package
~~~~~~~~~~~~~

Single hidden layer perceptron trained by backpropagation with momentum.
Contains the core network implementation, matrix and activation helpers,
model persistence, and the training API server.
"""

from neuro.exceptions import NetworkConfigError, ShapeError
from neuro.network import Network

__version__ = "1.0.0"

__all__ = ['Network', 'NetworkConfigError', 'ShapeError']
