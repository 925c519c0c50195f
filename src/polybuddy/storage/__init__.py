"""Persistence layer - SQLAlchemy models, repositories and sessions."""
