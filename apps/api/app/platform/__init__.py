from app.platform.security import AuthContext, AuthorizationError, BaseRepository

__all__ = ["AuthContext", "AuthorizationError", "BaseRepository"]
