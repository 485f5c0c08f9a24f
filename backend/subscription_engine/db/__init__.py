"""Database package"""

from subscription_engine.db.session import (
    AsyncSessionLocal,
    build_engine,
    build_session_factory,
    engine,
    init_models,
    session_scope,
)
from subscription_engine.models.base import Base

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "build_engine",
    "build_session_factory",
    "engine",
    "init_models",
    "session_scope",
]
