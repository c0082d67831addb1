from .maintenance import router as maintenance_router
from .memories import router as memories_router

__all__ = ["maintenance_router", "memories_router"]
