"""Run the expiration sweep once, outside the HTTP scheduler.

Usage:
    python -m scripts.process_expired_subscriptions            # sweep now
    python -m scripts.process_expired_subscriptions --dry-run  # list candidates only
    python -m scripts.process_expired_subscriptions --prune    # also prune old webhook events
"""

import argparse
import asyncio

from subscription_engine.core.config import get_settings
from subscription_engine.core.logging import configure_structlog
from subscription_engine.db.base import close_db, init_db, utcnow
from subscription_engine.services.expiration_sweeper import ExpirationSweeper


async def main(dry_run: bool = False, prune: bool = False) -> None:
    settings = get_settings()
    configure_structlog(log_level="INFO", json_logs=not settings.debug)
    await init_db()

    try:
        sweeper = ExpirationSweeper()
        now = utcnow()

        candidates = await sweeper.find_candidates(now)
        print(f"Found {len(candidates)} expired subscription(s) pending closure at {now.isoformat()}")
        for subscription_id in candidates:
            print(f"  subscription id={subscription_id}")

        if dry_run:
            print("\nDry run, nothing changed.")
            return

        result = await sweeper.expire_candidates(candidates, now)
        print(f"\nProcessed: {result.processed}  Skipped: {result.skipped}  Failed: {result.failed}")
        for error in result.errors:
            print(f"  ERROR {error}")

        if prune:
            deleted = await sweeper.prune_webhook_events(now, settings.webhook_retention_days)
            print(f"Pruned {deleted} webhook event(s) older than {settings.webhook_retention_days} days.")
    finally:
        await close_db()

    print("\nALL DONE")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="list candidates without closing them")
    parser.add_argument("--prune", action="store_true", help="also delete processed webhook events past retention")
    args = parser.parse_args()
    asyncio.run(main(dry_run=args.dry_run, prune=args.prune))
