"""
Repository Layer for Koffers

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.user_preferences_repository import (
    PreferencesRecord,
    UserPreferencesRepository,
    get_preferences_repository,
)


__all__ = [
    "PreferencesRecord",
    "UserPreferencesRepository",
    "get_preferences_repository",
]
