"""
perpx Exceptions

Custom exception classes for the perpx exchange engine.

Engine errors also derive from ValueError so that callers treating every
rejected operation as bad input keep working.  The message always starts
with the name of the violated rule (e.g. "AttemptReversePosition").
"""


class PerpxException(Exception):
    """Base exception for perpx."""
    pass


class ValidationError(PerpxException, ValueError):
    """Input rejected before any state change (zero amounts, bad ratios)."""
    pass


class ParameterError(ValidationError):
    """Governance parameter outside its allowed range."""
    pass


class InvariantViolation(PerpxException, ValueError):
    """Operation would break a ledger invariant (reversal, caps, locks)."""
    pass


class MarginError(PerpxException, ValueError):
    """Account margin does not allow the operation."""
    pass


class AccessError(PerpxException, ValueError):
    """Mutation attempted without the orchestrator capability."""
    pass


class ExternalDependencyError(PerpxException, ValueError):
    """A collaborator (oracle, pool) refused or failed the request."""
    pass


class OracleError(ExternalDependencyError):
    """Stale, invalid or unavailable price data."""
    pass


class SlippageError(ExternalDependencyError):
    """Pool output below the caller's minimum."""
    pass


class ConfigurationError(PerpxException):
    """Configuration error."""
    pass
