from __future__ import annotations


class AuthorizationError(Exception):
    """Raised when a read or write falls outside the caller's tenant scope."""
