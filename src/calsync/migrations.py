"""Programmatic Alembic migration runner.

Lets ``calsync migrate`` and the test fixtures upgrade a database without
shelling out to the Alembic CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"


def _sqlalchemy_url(db_url: str) -> str:
    """Pin the psycopg2 driver; asyncpg URLs are accepted unchanged otherwise."""
    for prefix in ("postgresql+asyncpg://", "postgres://"):
        if db_url.startswith(prefix):
            return "postgresql://" + db_url[len(prefix) :]
    return db_url


def _build_alembic_config(db_url: str) -> Config:
    ini_path = ALEMBIC_DIR / "alembic.ini"
    config = Config(str(ini_path))
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", _sqlalchemy_url(db_url).replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    return config


def run_migrations(db_url: str, revision: str = f"{CORE_CHAIN}@head") -> None:
    """Upgrade the database at *db_url* to *revision* (default: latest)."""
    config = _build_alembic_config(db_url)
    logger.info("Running migrations to %s", revision)
    command.upgrade(config, revision)


def downgrade_migrations(db_url: str, revision: str = "base") -> None:
    config = _build_alembic_config(db_url)
    logger.info("Downgrading migrations to %s", revision)
    command.downgrade(config, revision)
