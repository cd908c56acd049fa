"""
SQLModel ORM Models for Koffers

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import TimestampMixin
from app.infrastructure.db.models.user_preferences import UserPreferencesModel


__all__ = [
    "TimestampMixin",
    "UserPreferencesModel",
]
