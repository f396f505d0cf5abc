from .game import router as game_router
from .admin import router as admin_router

__all__ = ["game_router", "admin_router"]
