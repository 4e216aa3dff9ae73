"""
Error taxonomy for the warehouse load engine.

Components raise these and never partially apply their work; the pipeline
records the failure in the audit table and re-raises.
"""


class WarehouseError(Exception):
    """Base class for all load engine errors."""


class ValidationError(WarehouseError):
    """Malformed staged input: missing natural key or tracked attribute, or a rejected duplicate."""


class InvalidStateError(WarehouseError):
    """Audit lifecycle misuse, e.g. completing a run twice or an unknown run handle."""


class StoreError(WarehouseError):
    """Read or write failure against the warehouse store. Never retried inside the engine."""


class ConsistencyError(WarehouseError):
    """A stored invariant is broken (e.g. two active versions of one natural key); the run must halt."""


class RunInterruptedError(WarehouseError):
    """A shutdown signal arrived; the run stopped between steps."""
