"""
runlens errors.

Dashboard aggregation must never fail silently.
A metric that cannot be computed raises; it is never replaced by zeros.

Hierarchy:
----------
RunlensError
├── ConfigurationError      no usable data source configured
├── DataSourceError         store unreachable, timed out, or returned bad rows
├── ComputationError        a fold saw data that breaks its invariants
└── ValidationError         caller supplied an unusable argument
    ├── UnknownPartitionError
    └── UnknownMetricError
"""

from typing import Iterable, Optional


class RunlensError(Exception):
    """Base exception for all runlens operations."""
    pass


class ConfigurationError(RunlensError):
    """
    Raised when no usable data source is configured.

    Surfaced before any computation is attempted. Never retried.
    """

    def __init__(self, message: str = "Not configured"):
        super().__init__(message)


class DataSourceError(RunlensError):
    """Raised when the execution store cannot answer a query."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Data source error during {operation}: {reason}")


class ComputationError(RunlensError):
    """Raised when a computation encounters rows that violate its invariants."""

    def __init__(self, computation: str, reason: str):
        self.computation = computation
        self.reason = reason
        super().__init__(f"Computation '{computation}' failed: {reason}")


class ValidationError(RunlensError):
    """Raised when a caller passes an invalid argument."""
    pass


class UnknownPartitionError(ValidationError):
    """Raised when a partition label matches no known business unit."""

    def __init__(self, label: str, valid: Optional[Iterable[str]] = None):
        self.label = label
        self.valid = sorted(valid) if valid is not None else []
        message = f"Unknown business unit: '{label}'"
        if self.valid:
            message += f". Valid business units: {self.valid}"
        super().__init__(message)


class UnknownMetricError(ValidationError):
    """Raised when a single-metric fetch names a metric that does not exist."""

    def __init__(self, name: str, valid: Optional[Iterable[str]] = None):
        self.name = name
        self.valid = sorted(valid) if valid is not None else []
        message = f"Unknown metric: '{name}'"
        if self.valid:
            message += f". Valid metrics: {self.valid}"
        super().__init__(message)
