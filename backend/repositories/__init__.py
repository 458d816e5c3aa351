"""
Repository Pattern Support

Shared exceptions for the data access layer of the privacy API.
"""

from repositories.base import (
    RepositoryError,
    DuplicateError,
)

__all__ = [
    "RepositoryError",
    "DuplicateError",
]
