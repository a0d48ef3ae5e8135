from .memories import router as memories_router
from .maintenance import router as maintenance_router

__all__ = ["memories_router", "maintenance_router"]
