"""HTTP routers."""

from .health import router as health_router
from .narration import router as narration_router

__all__ = ["health_router", "narration_router"]
