"""
exceptions.py
~~~~~~~~~~~~~

Errors raised by the network core.
"""


class ShapeError(ValueError):
    """An input or target vector does not match the configured layer sizes."""


class NetworkConfigError(ValueError):
    """A network could not be built from the given sizes or document."""
