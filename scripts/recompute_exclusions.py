#!/usr/bin/env python
"""Recompute exclusions for one user or for everyone.

Usage:
    python scripts/recompute_exclusions.py            # all users
    python scripts/recompute_exclusions.py --user 42
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add peek to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from peek.config import get_settings
from peek.db.database import init_db
from peek.logging import configure_logging
from peek.services.exclusion_compute import recompute_all_users, recompute_for_user

logger = logging.getLogger(__name__)


async def main(user_id: int | None):
    await init_db()

    if user_id is not None:
        count = await recompute_for_user(user_id)
        logger.info(f"User {user_id}: {count} exclusions")
        return 0

    result = await recompute_all_users()
    for error in result["errors"]:
        logger.error(f"User {error['user_id']}: {error['error']}")
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Recompute user exclusions")
    parser.add_argument("--user", type=int, default=None, help="Only this user id")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    sys.exit(asyncio.run(main(args.user)))
