"""
User Preferences Repository

Data access layer for per-user preference documents.
Writes are version-checked: a save only lands if the row still carries the
version the caller read, so concurrent read-modify-write cycles cannot
silently overwrite each other.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.user_preferences import UserPreferencesModel
from app.infrastructure.exceptions import ConcurrencyConflictError


logger = logging.getLogger(__name__)

TABLE = UserPreferencesModel.__tablename__


@dataclass(frozen=True)
class PreferencesRecord:
    """A preference document together with the version it was read at."""
    user_id: str
    prefs: dict[str, Any] = field(default_factory=dict)
    version: int = 1


class UserPreferencesRepository:
    """
    Repository for user preference documents.

    Each operation runs in its own session so that a version check always
    sees committed state.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get(self, user_id: str) -> Optional[PreferencesRecord]:
        """
        Get the preference document for a user.

        Args:
            user_id: User identity

        Returns:
            PreferencesRecord or None when the user has never saved anything
        """
        async with get_session_context(self._session_factory) as session:
            statement = select(UserPreferencesModel).where(
                UserPreferencesModel.user_id == user_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()

            if model:
                return self._to_record(model)

            return None

    async def get_prefs(self, user_id: str) -> dict[str, Any]:
        """Get the preference document, or an empty one."""
        record = await self.get(user_id)
        return dict(record.prefs) if record else {}

    async def list_all(self) -> list[PreferencesRecord]:
        """Every stored preference document, ordered by user."""
        async with get_session_context(self._session_factory) as session:
            statement = select(UserPreferencesModel).order_by(
                UserPreferencesModel.user_id
            )
            result = await session.execute(statement)
            return [self._to_record(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def save(
        self,
        user_id: str,
        prefs: dict[str, Any],
        expected_version: Optional[int],
    ) -> PreferencesRecord:
        """
        Write a preference document if nobody else wrote it first.

        Args:
            user_id: User identity
            prefs: Complete preference document to store
            expected_version: Version the caller read, or None if the caller
                saw no document at all

        Returns:
            The stored record with its new version

        Raises:
            ConcurrencyConflictError: The row changed (or appeared) since it
                was read
        """
        if expected_version is None:
            return await self._insert(user_id, prefs)

        async with get_session_context(self._session_factory) as session:
            statement = (
                update(UserPreferencesModel)
                .where(UserPreferencesModel.user_id == user_id)
                .where(UserPreferencesModel.version == expected_version)
                .values(
                    prefs=prefs,
                    version=expected_version + 1,
                    updated_at=utcnow(),
                )
            )
            result = await session.execute(statement)

            if result.rowcount != 1:
                raise ConcurrencyConflictError(
                    f"Preferences for user {user_id} changed since version {expected_version}",
                    operation="update",
                    table=TABLE,
                )

        logger.debug(f"Saved preferences for user {user_id} at version {expected_version + 1}")
        return PreferencesRecord(user_id=user_id, prefs=prefs, version=expected_version + 1)

    async def _insert(self, user_id: str, prefs: dict[str, Any]) -> PreferencesRecord:
        try:
            async with get_session_context(self._session_factory) as session:
                session.add(UserPreferencesModel(user_id=user_id, prefs=prefs, version=1))
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                f"Preferences for user {user_id} were created concurrently",
                operation="insert",
                table=TABLE,
                original_error=e,
            )

        logger.info(f"Created preferences for user {user_id}")
        return PreferencesRecord(user_id=user_id, prefs=prefs, version=1)

    async def delete(self, user_id: str) -> bool:
        """
        Delete a user's preference document (account deletion).

        Returns:
            True if a document was deleted
        """
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(
                delete(UserPreferencesModel).where(
                    UserPreferencesModel.user_id == user_id
                )
            )
            deleted = result.rowcount > 0

        if deleted:
            logger.info(f"Deleted preferences for user {user_id}")
        return deleted

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_record(self, model: UserPreferencesModel) -> PreferencesRecord:
        """Convert database model to a detached record."""
        return PreferencesRecord(
            user_id=model.user_id,
            prefs=dict(model.prefs or {}),
            version=model.version,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_preferences_repo_instance: Optional[UserPreferencesRepository] = None


def get_preferences_repository() -> UserPreferencesRepository:
    """Get or create preferences repository singleton."""
    global _preferences_repo_instance

    if _preferences_repo_instance is None:
        _preferences_repo_instance = UserPreferencesRepository()

    return _preferences_repo_instance
