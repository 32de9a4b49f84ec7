from __future__ import annotations


class CaptureStoreError(Exception):
    """Base class for every error raised by capture_store."""


class SessionStateError(CaptureStoreError):
    """A lifecycle transition was requested on a finished session."""


# Storage


class StorageError(CaptureStoreError):
    message = "Storage error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)


class NotFoundError(StorageError):
    message = "Not found"


class InvalidFormatError(StorageError):
    message = "Invalid file format"


class PermissionDeniedError(StorageError):
    message = "Write permission denied"


class CorruptedDataError(StorageError):
    message = "Corrupted data"


class InsufficientSpaceError(StorageError):
    message = "Insufficient disk space"


class EncodingError(StorageError):
    message = "Encoding failed"


class DecodingError(StorageError):
    message = "Decoding failed"


class CapacityExceededError(StorageError):
    message = "Memory limit exceeded"

    def __init__(self, max_sessions: int) -> None:
        self.max_sessions = max_sessions
        super().__init__(f"store already holds {max_sessions} sessions")


# Search


class SearchError(CaptureStoreError):
    pass


class InvalidSearchPatternError(SearchError):
    def __init__(self, pattern: str, reason: str) -> None:
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid search pattern {pattern!r}: {reason}")


class SearchTimeoutError(SearchError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Search exceeded timeout of {timeout:.2f}s")
