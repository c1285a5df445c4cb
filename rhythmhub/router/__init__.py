from .levels import router as levels_router
from .profile import router as profile_router
from .session import router as session_router
from .users import router as users_router

__all__ = [
    "levels_router",
    "profile_router",
    "session_router",
    "users_router",
]
