"""
Base Repository

Common exceptions raised by the data access layer. Services translate these
into their own error taxonomy; they never reach the HTTP boundary raw.
"""

from typing import Optional


class RepositoryError(Exception):
    """Base exception for repository errors"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class DuplicateError(RepositoryError):
    """Raised when a uniqueness constraint rejects a write"""
    pass
