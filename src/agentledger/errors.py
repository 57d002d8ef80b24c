"""
agentledger error types.

Business outcomes (limit exceeded, invoice already paid, ...) are returned as
result values with a reason string. Exceptions cover the cases a caller must
handle differently: bad input, a broken store, an unreachable node.
"""


class LedgerError(Exception):
    """Base error for all agentledger operations."""
    pass


class ValidationError(LedgerError, ValueError):
    """Input rejected before reaching the billing core."""
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


# Storage errors
class StorageError(LedgerError):
    """The SQLite store failed to read or write."""
    pass


# Network errors
class NetworkError(LedgerError):
    """Network-level failures (DNS, connection refused, timeouts)."""
    pass


class RpcError(NetworkError):
    """Blockchain node returned a JSON-RPC error object."""
    def __init__(self, code: int, message: str):
        self.code = code
        super().__init__(message)
