"""
Inspect stored subscription blobs and optionally repair corrupt ones.

Lists every user's subscription status, limits and AI chat usage. Documents
whose ``subscription`` value fails validation are reported; with --repair
they are rewritten to the free-tier default (other preference keys are kept).

Usage:
    python scripts/inspect_subscriptions.py
    python scripts/inspect_subscriptions.py --repair
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config.settings import settings
from app.domain.subscription import (
    PREFERENCE_KEY,
    default_subscription,
    resolve_subscription,
)
from app.infrastructure.db.database import close_db
from app.infrastructure.db.repositories.user_preferences_repository import (
    UserPreferencesRepository,
)
from app.infrastructure.exceptions import (
    ConcurrencyConflictError,
    CorruptPreferenceDataError,
)


async def inspect(repo: UserPreferencesRepository, repair: bool) -> int:
    """Print a line per user; return the number of corrupt documents found."""
    now = datetime.now(settings.reset_zone)
    records = await repo.list_all()
    corrupt = 0

    print(f"Found {len(records)} preference documents\n")

    for record in records:
        if PREFERENCE_KEY not in record.prefs:
            print(f"  {record.user_id}: no subscription (free tier default)")
            continue

        try:
            sub = resolve_subscription(record.prefs, now)
        except CorruptPreferenceDataError as e:
            corrupt += 1
            print(f"  {record.user_id}: CORRUPT - {e.message}")
            for error in e.details.get("errors", []):
                print(f"      {error}")

            if repair:
                prefs = dict(record.prefs)
                prefs[PREFERENCE_KEY] = default_subscription(now).to_preference()
                try:
                    await repo.save(record.user_id, prefs, record.version)
                    print("      repaired -> free tier default")
                except ConcurrencyConflictError:
                    print("      skipped: document changed during repair, rerun the script")
            continue

        print(
            f"  {record.user_id}: {sub.status.value} "
            f"banks={sub.usage.institution_connections}/{sub.limits.institution_connections} "
            f"storage={sub.usage.storage_gb}/{sub.limits.storage_gb}GB "
            f"ai={sub.usage.ai_chat_messages_this_month}/{sub.limits.ai_chat_messages_per_month} "
            f"(resets {sub.usage.ai_chat_messages_reset_date.isoformat()})"
        )

    return corrupt


async def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Rewrite corrupt subscription values to the free tier default",
    )
    args = parser.parse_args()

    repo = UserPreferencesRepository()
    try:
        corrupt = await inspect(repo, args.repair)
    finally:
        await close_db()

    print(f"\n{corrupt} corrupt subscription documents")
    if corrupt and not args.repair:
        print("Run again with --repair to reset them.")


if __name__ == "__main__":
    asyncio.run(main())
