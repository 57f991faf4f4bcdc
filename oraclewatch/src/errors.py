"""Exception hierarchy shared by the scheduler, monitor and adapters."""


class OracleWatchError(Exception):
    """Base exception for all oraclewatch errors."""

    pass


class NotFoundError(OracleWatchError):
    """Raised when a monitored instance is unknown to the gateway."""

    pass


class UnregisteredProtocolError(OracleWatchError):
    """Raised when no sync function or adapter is wired for a protocol."""

    pass


class AdapterError(OracleWatchError):
    """Raised by protocol adapters when a reading cannot be obtained."""

    pass


class PersistenceError(OracleWatchError):
    """Raised when the persistence gateway fails to store a row."""

    pass


class OperationTimeoutError(OracleWatchError, TimeoutError):
    """Raised by with_timeout() when the wrapped call does not finish in time."""

    pass
