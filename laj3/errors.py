"""Error hierarchy shared by the laj3 commands."""

from __future__ import annotations


class Laj3Error(Exception):
    """Base exception for all laj3 errors.

    Attributes:
        message: Human-readable error description
        code: Process exit code used when the error ends a command
    """

    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class InvalidPathError(Laj3Error):
    """A root, dictionary file or target path does not resolve."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class FileAccessError(Laj3Error):
    """A file or directory exists but could not be read."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class CorruptDictionaryError(Laj3Error):
    """A serialized dictionary failed validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class UnknownProjectError(Laj3Error):
    """The server has no project registered under the requested name."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


class ConnectionFailureError(Laj3Error):
    """The peer could not be reached or the connection dropped."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class TransferInterruptedError(Laj3Error):
    """A file body ended before the announced length was received."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class WriteFailureError(Laj3Error):
    """A received file could not be committed to its destination."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=8)


class ProtocolError(Laj3Error):
    """The peer sent a frame that does not fit the session state."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=9)


class IntegrityError(Laj3Error):
    """Received bytes do not match the size or fingerprint in the dictionary."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=10)


#: Errors worth a reconnect-and-retry during a file transfer.
TRANSIENT_ERRORS = (ConnectionFailureError, TransferInterruptedError)


__all__ = [
    "Laj3Error",
    "InvalidPathError",
    "FileAccessError",
    "CorruptDictionaryError",
    "UnknownProjectError",
    "ConnectionFailureError",
    "TransferInterruptedError",
    "WriteFailureError",
    "ProtocolError",
    "IntegrityError",
    "TRANSIENT_ERRORS",
]
