"""Release ledger database layer.

This module handles database connections, session management, and the
append-only tables recording release transitions and sync operations.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""
