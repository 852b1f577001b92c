#!/usr/bin/env python
"""
Database migrations for CrediBill

Usage:
    python migrate_db.py                      # upgrade to head
    python migrate_db.py downgrade [revision]
    python migrate_db.py current
    python migrate_db.py check                # verify every billing table exists
"""
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent
sys.path.insert(0, str(ROOT / "src"))

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import inspect

from credibill.config import config
from credibill.logging_config import setup_logging

setup_logging(config.ENV, config.LOG_LEVEL)
logger = logging.getLogger("credibill.migrations")


def _alembic_config() -> Config:
    # Resolve alembic.ini next to this script so the command works from any cwd
    alembic_cfg = Config(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))
    return alembic_cfg


def upgrade_db(revision: str = "head"):
    logger.info(f"Upgrading billing schema to {revision}")
    command.upgrade(_alembic_config(), revision)
    logger.info("Billing schema is up to date")


def downgrade_db(revision: str = "-1"):
    logger.warning(f"Downgrading billing schema to {revision}")
    command.downgrade(_alembic_config(), revision)
    logger.info("Downgrade completed")


def show_current_revision() -> bool:
    """Log the applied and the latest revision; True when they match"""
    from credibill.db.engine import engine

    head = ScriptDirectory.from_config(_alembic_config()).get_current_head()
    with engine.connect() as connection:
        current = MigrationContext.configure(connection).get_current_revision()

    if current is None:
        logger.warning("Database has no billing schema yet; run an upgrade first")
    else:
        logger.info(f"Applied revision: {current}")
    logger.info(f"Latest revision: {head}")
    return current == head


def check_tables() -> bool:
    """Compare the live database with the tables the models declare"""
    from credibill.db import Base, models  # noqa: F401
    from credibill.db.engine import engine

    existing = set(inspect(engine).get_table_names())
    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        logger.error(f"Missing billing tables: {', '.join(missing)}")
        return False
    logger.info(f"All {len(Base.metadata.tables)} billing tables present")
    return True


if __name__ == "__main__":
    action = sys.argv[1] if len(sys.argv) > 1 else "upgrade"

    if action == "upgrade":
        upgrade_db(sys.argv[2] if len(sys.argv) > 2 else "head")
    elif action == "downgrade":
        downgrade_db(sys.argv[2] if len(sys.argv) > 2 else "-1")
    elif action == "current":
        sys.exit(0 if show_current_revision() else 1)
    elif action == "check":
        sys.exit(0 if check_tables() else 1)
    else:
        print(__doc__)
        sys.exit(2)
