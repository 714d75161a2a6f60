"""Error types for schema initialization.

Directory Service adapters translate driver faults into `DirectoryError`
instances tagged with an `ErrorKind`. Everything above the adapter layer
branches on the kind and never on driver message wording.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """
    Classification of a Directory Service fault.

    Values:
        NOT_FOUND: The named database/table/index does not exist.
        AMBIGUOUS: A name-based lookup matched more than one catalog row.
        ALREADY_EXISTS: A create call hit an existing name.
        CONNECTION: The session to the store could not be used.
        OTHER: Anything else.
    """

    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS = "AMBIGUOUS"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CONNECTION = "CONNECTION"
    OTHER = "OTHER"


class RdbInitError(Exception):
    """Base error for all rdbinit errors."""


class DirectoryError(RdbInitError):
    """Raised by Directory Service adapters for any catalog or query fault."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND

    @property
    def is_ambiguous(self) -> bool:
        return self.kind is ErrorKind.AMBIGUOUS

    @property
    def is_already_exists(self) -> bool:
        return self.kind is ErrorKind.ALREADY_EXISTS


class NotFound(DirectoryError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, message)


class CatalogAmbiguity(DirectoryError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.AMBIGUOUS, message)


class AlreadyExists(DirectoryError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.ALREADY_EXISTS, message)


class ConnectionFailure(DirectoryError):
    """Raised when a session to the store cannot be established or is lost."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.CONNECTION, message)


_KIND_TO_ERROR: dict[ErrorKind, type[DirectoryError]] = {
    ErrorKind.NOT_FOUND: NotFound,
    ErrorKind.AMBIGUOUS: CatalogAmbiguity,
    ErrorKind.ALREADY_EXISTS: AlreadyExists,
    ErrorKind.CONNECTION: ConnectionFailure,
}


def directory_error(kind: ErrorKind, message: str) -> DirectoryError:
    """Build the most specific DirectoryError subclass for a kind."""
    cls = _KIND_TO_ERROR.get(kind)
    if cls is None:
        return DirectoryError(kind, message)
    return cls(message)


class ReconciliationFailure(RdbInitError):
    """Raised when duplicate detection or resolution cannot complete."""

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"{message} ({target})")


class StateCorruption(RdbInitError):
    """Raised when the local ledger file cannot be read or parsed."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Ledger '{path}' is unreadable: {detail}")


class LockFailure(RdbInitError):
    """Raised when the initialization lock cannot be set, renewed or removed."""


class LockTimeout(LockFailure):
    """Raised when the initialization lock is not acquired within the timeout."""

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"Could not acquire lock for '{key}' within {timeout:g}s")


class LockCancelled(LockFailure):
    """Raised when waiting for the initialization lock is cancelled."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Waiting for lock '{key}' was cancelled")


class SchemaError(RdbInitError, TypeError):
    """Raised when a connection config or schema descriptor is malformed."""


class InitializationError(RdbInitError):
    """
    Raised by `init()` for any unrecoverable failure.

    The message is one of a few fixed templates; the underlying fault is
    available as `__cause__`.
    """
