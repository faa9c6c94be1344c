#!/usr/bin/env python
"""Run one full catalog refresh from the command line.

Recomputes inherited tags, rebuilds the snapshot, then recomputes every
user's exclusions and rankings. Useful right after a manual sync.

Usage:
    python scripts/refresh_catalog.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add peek to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from peek.config import get_settings
from peek.db.database import init_db, async_session_maker
from peek.logging import configure_logging
from peek.services.catalog_snapshot import get_mirror, refresh_catalog

logger = logging.getLogger(__name__)


async def main():
    await init_db()

    mirror = get_mirror()
    try:
        await refresh_catalog(mirror, async_session_maker)
    except Exception as e:
        logger.error(f"Refresh failed: {e}", exc_info=True)
        return 1

    snapshot = mirror.current
    logger.info(f"Catalog v{snapshot.version}: {dict(snapshot.entity_counts)}")
    return 0


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
