from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError
from app.platform.security.repository import BaseRepository, is_admin_bypass

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
    "is_admin_bypass",
]
