# ============================================================================
# Canteen Order Engine v1.0.0
# API Routes Module
# ============================================================================

from app.api.orders import router as orders_router
from app.api.admin import router as admin_router
from app.api.events import router as events_router

__all__ = ["orders_router", "admin_router", "events_router"]
