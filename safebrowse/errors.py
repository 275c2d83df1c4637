"""
SafeBrowse error kinds

Every failure the replica surfaces to its callers is one of these. Errors
raised by third-party libraries (httpx, pydantic, redis) are translated into
this hierarchy at the module that talks to the library.
"""

from typing import Optional


class SafeBrowseError(Exception):
    """Base exception for SafeBrowse operations"""

    pass


class MalformedURLError(SafeBrowseError, ValueError):
    """Raised when a URL cannot be split into scheme, host and path"""

    pass


class RemoteServiceError(SafeBrowseError):
    """Raised when the remote threat service fails or answers garbage"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DesyncError(SafeBrowseError):
    """
    Raised when an update diff removes an index the local list does not have.

    The local replica has diverged from the server; the list must be reset
    and fetched again as a FULL update.
    """

    def __init__(self, list_id, index: int, size: int):
        super().__init__(
            f"Removal index {index} out of range for list {list_id} (size {size})"
        )
        self.list_id = list_id
        self.index = index
        self.size = size


class NotReadyError(SafeBrowseError):
    """Raised when a lookup runs before the first successful synchronization"""

    pass


class StoreError(SafeBrowseError):
    """Raised when the backing key-value store fails"""

    pass
