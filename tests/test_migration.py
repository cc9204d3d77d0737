"""
The initial migration builds the same schema as the ORM models.
"""
import importlib.util
from pathlib import Path
from types import ModuleType

import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

import agency_ledger
from agency_ledger.database.models import Base

VERSIONS = Path(agency_ledger.__file__).parent / "database" / "migrations" / "versions"


def load_revision(filename: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.unit
def test_initial_schema_upgrade_and_downgrade() -> None:
    revision = load_revision("001_initial_schema.py")
    engine = sa.create_engine("sqlite://")

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            revision.upgrade()
        inspector = sa.inspect(conn)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for table in Base.metadata.sorted_tables:
            migrated = {column["name"] for column in inspector.get_columns(table.name)}
            assert migrated == set(table.columns.keys()), table.name
        indexes = {index["name"] for index in inspector.get_indexes("memberships")}
        assert "uq_memberships_one_active" in indexes

        with Operations.context(MigrationContext.configure(conn)):
            revision.downgrade()
        assert sa.inspect(conn).get_table_names() == []

    engine.dispose()
