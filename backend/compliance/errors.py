"""
GDPR Compliance Errors

Error taxonomy shared by the consent store, the request managers and the
GDPR service. The HTTP boundary maps each class to one status code.
"""

from typing import Optional


class GDPRError(Exception):
    """Base exception for GDPR compliance errors"""

    status_code = 500

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class ValidationError(GDPRError):
    """Malformed or missing input"""

    status_code = 400


class AuthError(GDPRError):
    """Missing or invalid session"""

    status_code = 401


class NotFoundError(GDPRError):
    """Operation on a record that does not exist for this user"""

    status_code = 404


class ConflictError(GDPRError):
    """Request conflicts with current state (e.g. a pending deletion exists)"""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """Status change not allowed from the record's current state"""

    def __init__(self, record_id: str, current: str, target: str):
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {record_id} from {current} to {target}")


class InternalError(GDPRError):
    """Storage or unexpected failure"""

    status_code = 500
