"""Database package — async SQLAlchemy engine, session factory, models and the run store."""
from .engine import get_engine, get_session_factory, create_tables, dispose_engine
from .base import Base

__all__ = ["get_engine", "get_session_factory", "create_tables", "dispose_engine", "Base"]
