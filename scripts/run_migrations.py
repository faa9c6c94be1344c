#!/usr/bin/env python
"""Apply Alembic migrations before the API starts.

Usage:
    python scripts/run_migrations.py
"""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from alembic import command
from alembic.config import Config

from peek.config import get_settings
from peek.logging import configure_logging

logger = logging.getLogger(__name__)


def run_migrations() -> bool:
    """Upgrade the schema to head. Returns False on failure."""
    try:
        alembic_cfg = Config(str(ROOT / "alembic.ini"))
        alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))
        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations complete - schema is at head")
        return True
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return False


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    sys.exit(0 if run_migrations() else 1)
