"""
Tests for database settings resolution and the session provider.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy import func, select

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import DatabaseConfig
from database.connection import DatabaseSettings, DatabaseSessionProvider
from database.models import Entity, EntityType

from conftest import TITULAR_RFC

DB_ENV_VARS = ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD", "DATABASE_URL")


@pytest.fixture
def clean_env(monkeypatch):
    for name in DB_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDatabaseSettings:

    def test_config_section_is_default(self, clean_env):
        settings = DatabaseSettings.from_env(
            DatabaseConfig(host="db.internal", port=6543, name="credit", user="svc", password="pw")
        )

        assert settings.get_url() == "postgresql+psycopg2://svc:pw@db.internal:6543/credit"

    def test_environment_overrides_config(self, clean_env):
        clean_env.setenv("DB_HOST", "replica.internal")
        clean_env.setenv("DB_PORT", "7000")

        settings = DatabaseSettings.from_env(DatabaseConfig(host="db.internal", name="credit"))

        assert settings.host == "replica.internal"
        assert settings.port == 7000
        assert settings.database == "credit"

    def test_database_url_wins(self, clean_env):
        clean_env.setenv("DB_HOST", "ignored.internal")
        clean_env.setenv("DATABASE_URL", "sqlite://")

        assert DatabaseSettings.from_env().get_url() == "sqlite://"

    def test_pool_options(self, clean_env):
        options = DatabaseSettings.from_env().pool_options()

        assert options["pool_size"] == 5
        assert options["pool_pre_ping"] is True


class TestSessionProvider:

    def test_uninitialized_engine_raises(self):
        with pytest.raises(RuntimeError):
            DatabaseSessionProvider(settings=DatabaseSettings()).engine

    def test_scope_commits(self, db_provider):
        with db_provider.session_scope() as session:
            session.add(Entity(tax_id=TITULAR_RFC, entity_type=EntityType.FISICA, legal_name="Delia Gómez Estrada"))

        with db_provider.session_scope() as session:
            assert session.scalar(select(func.count()).select_from(Entity)) == 1

    def test_scope_rolls_back_on_error(self, db_provider):
        with pytest.raises(ValueError):
            with db_provider.session_scope() as session:
                session.add(Entity(tax_id=TITULAR_RFC, entity_type=EntityType.FISICA, legal_name="Delia Gómez Estrada"))
                session.flush()
                raise ValueError("abort")

        with db_provider.session_scope() as session:
            assert session.scalar(select(func.count()).select_from(Entity)) == 0
