"""
Authentication Module

Validates frontend sessions for the privacy API.
"""

# Lazy imports avoid settings validation during testing
__all__ = [
    "SessionData",
    "get_current_user",
]


def __getattr__(name):
    """Lazy load submodules to avoid import issues during testing"""
    if name in __all__:
        from auth import session_auth
        return getattr(session_auth, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
