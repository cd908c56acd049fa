"""
User Preferences Database Model

SQLModel table holding each user's preference document. The subscription
blob lives under the ``subscription`` key of ``prefs``.
"""

from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin


class UserPreferencesModel(TimestampMixin, table=True):
    """
    Preference document keyed by user identity.

    ``version`` starts at 1 and is incremented on every write; writers must
    present the version they read.
    """

    __tablename__ = "user_preferences"

    user_id: str = Field(primary_key=True, max_length=64)
    prefs: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    version: int = Field(default=1, nullable=False)
