"""Programmatic Alembic access for the orchestrator database."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, pool

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path, *, project_root: Path = PROJECT_ROOT) -> Config:
    """Alembic config pointed at the repo migrations and the given SQLite file."""

    config = Config(str(project_root / "alembic.ini"))
    config.set_main_option("script_location", str(project_root / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, None for an unmigrated file."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Apply pending migrations; a database already at head is left untouched."""

    head = head_revision(db_path)
    if db_path.exists() and current_revision(db_path) == head:
        return
    logger.info("Upgrading %s to revision %s", db_path, head)
    command.upgrade(alembic_config(db_path), "head")
