from app.api.auth import router as auth_router, get_current_user
from app.api.chat import router as chat_router
from app.api.credits import router as credits_router
from app.api.memories import router as memories_router
from app.api.projects import router as projects_router
from app.api.webhooks import router as webhooks_router

__all__ = [
    "auth_router",
    "chat_router",
    "credits_router",
    "memories_router",
    "projects_router",
    "webhooks_router",
    "get_current_user",
]
