from pathlib import Path

import allure

from feed_importer.importing.repository import CatalogRepository
from feed_importer.importing.storage.alembic_runner import head_revision

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = CatalogRepository(tmp_path / "migrations.db")
    repository.init_schema()

    row = repository._connection.execute(
        "SELECT version_num FROM alembic_version LIMIT 1"
    ).fetchone()
    assert row is not None
    assert str(row["version_num"]) == head_revision() == "20261019_0001"

    tables = repository._connection.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name IN ('feeds', 'products', 'price_history', 'import_jobs')
        ORDER BY name
        """
    ).fetchall()
    assert [str(row["name"]) for row in tables] == [
        "feeds",
        "import_jobs",
        "price_history",
        "products",
    ]
    repository.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = CatalogRepository(db_path)
    first.init_schema()
    first.close()

    second = CatalogRepository(db_path)
    second.init_schema()

    indexes = second._connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name = ?",
        ("uq_import_jobs_single_processing",),
    ).fetchall()
    assert len(indexes) == 1
    second.close()
