"""Error taxonomy for the causal forest pipeline stages."""

from __future__ import annotations


class CausalForestError(Exception):
    """Base class for every pipeline failure."""


class LoadError(CausalForestError):
    """Input file missing, unreadable, or in an unsupported format."""


class SchemaError(CausalForestError, ValueError):
    """Requested column absent or not coercible to the expected type."""


class DimensionMismatch(CausalForestError, ValueError):
    """Row counts disagree across X, W, Y or nuisance predictions."""


class EstimatorError(CausalForestError, RuntimeError):
    """The external estimation library rejected its inputs."""
