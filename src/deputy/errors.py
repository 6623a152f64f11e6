"""
Deputy error types.

Specific exceptions for each failure class the keeper distinguishes, so
callers can decide between deferring, skipping, and alerting.
"""


class DeputyError(Exception):
    """Base error for all Deputy operations."""
    pass


class ConfigError(DeputyError):
    """Keeper configuration is missing or invalid. Fatal at startup."""
    pass


# Remote access errors
class TransportError(DeputyError):
    """A remote call failed outright (no response, connection refused, RPC error)."""
    pass


class LedgerError(DeputyError):
    """Delegation ledger returned data that could not be interpreted."""
    pass


class ReadModelError(DeputyError):
    """Read-model query failed or returned errors."""
    pass


# Execution errors
class ExecutionError(DeputyError):
    """Base error for the simulate/submit/confirm protocol."""
    pass


class SimulationRejected(ExecutionError):
    """Dry run of the action was rejected by the remote system."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Simulation rejected: {reason}")


class SubmissionError(ExecutionError):
    """Signing or broadcasting the action failed."""
    pass


class ConfirmationTimeout(ExecutionError):
    """Receipt did not arrive before the confirmation ceiling."""
    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_hash} after {timeout:.0f}s")
