# ============================================================================
# Canteen Order Engine v1.0.0
# Database Module - SQLAlchemy Session Management and Order Store
# ============================================================================

from app.database.session import engine, SessionLocal, build_engine, build_session_factory
from app.database.order_store import OrderStore

__all__ = ["engine", "SessionLocal", "build_engine", "build_session_factory", "OrderStore"]
