"""
Error taxonomy shared by the analytics components.

Validation problems are raised before any computation starts, so a caller
that sees a ValidationError knows the graph was not touched. Computation
problems wrap the underlying failure (available as ``__cause__``).
"""


class GraphCoreError(Exception):
    """Base class for all errors raised by kg_analytics."""


class ValidationError(GraphCoreError, ValueError):
    """Bad input: unknown node/edge id, invalid bound or parameter, illegal state."""


class ComputationError(GraphCoreError, RuntimeError):
    """An analysis failed part way (clustering backend, malformed metapath, ...)."""
