"""Programmatic Alembic migration runner.

Lets the CLI upgrade the schema without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"
TARGET_SCHEMA_OPTION = "daypulse.target_schema"
_VERSION_TABLE_SCHEMA_OPTION = "version_table_schema"
_VALID_SCHEMA_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _normalize_schema(schema: str | None) -> str | None:
    if schema is None:
        return None
    normalized = schema.strip()
    if not normalized:
        return None
    if _VALID_SCHEMA_RE.fullmatch(normalized) is None:
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    return normalized


def build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    """Build an Alembic Config for the core version chain.

    Args:
        db_url: SQLAlchemy-compatible database URL.
        target_schema: Optional schema that receives the tables and the
            ``alembic_version`` table.
    """
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    normalized_schema = _normalize_schema(target_schema)
    if normalized_schema is not None:
        config.set_main_option(TARGET_SCHEMA_OPTION, normalized_schema)
        config.set_main_option(_VERSION_TABLE_SCHEMA_OPTION, normalized_schema)
    return config


def run_migrations(db_url: str, schema: str | None = None, revision: str = "heads") -> None:
    """Upgrade the database at *db_url* to *revision* (default: latest)."""
    normalized_schema = _normalize_schema(schema)
    config = build_alembic_config(db_url, target_schema=normalized_schema)
    logger.info(
        "Running migrations (revision=%s, schema=%s)",
        revision,
        normalized_schema or "<default>",
    )
    command.upgrade(config, revision)
