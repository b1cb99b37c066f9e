"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_ROOT_DIR = Path(__file__).resolve().parents[4]


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    command.upgrade(_catalog_config(db_path), "head")


def head_revision() -> str | None:
    """Newest migration revision shipped with the package."""

    script = ScriptDirectory.from_config(_catalog_config(None))
    return script.get_current_head()


def _catalog_config(db_path: Path | None) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
