"""API routers."""

from dojoflow.routers.automations import router as automations_router
from dojoflow.routers.credits import router as credits_router

__all__ = ["automations_router", "credits_router"]
