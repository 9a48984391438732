# src/forum_stage/db/__init__.py
"""Database configuration and utilities."""

from .session import Base, create_engine_from_settings, create_session_factory

__all__ = ["Base", "create_engine_from_settings", "create_session_factory"]
