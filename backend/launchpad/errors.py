"""Error taxonomy shared by the resolver, the stores and the reconciliation service.

NotFound is absent: an exhausted chain search is an ordinary
``Resolution`` outcome, never an exception.
"""


class ConflictError(Exception):
    """A uniqueness rule rejected the write. Not retryable as-is."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class StoreUnavailable(Exception):
    """A coin store could not be reached or initialized."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class TransientChainError(Exception):
    """An RPC call failed (timeout, connection, rate limit, deadline). Retryable."""


class PendingNotFound(Exception):
    """No pending reservation exists for the requested symbol."""

    def __init__(self, symbol: str):
        super().__init__(f"no pending reservation for symbol {symbol}")
        self.symbol = symbol
