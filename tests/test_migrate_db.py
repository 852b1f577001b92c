"""
Tests for the migration helper script
"""
from sqlalchemy import text

import migrate_db


class TestCheckTables:

    def test_all_tables_present(self, test_engine, monkeypatch):
        monkeypatch.setattr("credibill.db.engine.engine", test_engine)

        assert migrate_db.check_tables() is True

    def test_reports_missing_table(self, test_engine, monkeypatch):
        monkeypatch.setattr("credibill.db.engine.engine", test_engine)
        with test_engine.begin() as connection:
            connection.execute(text("DROP TABLE invoice_counters"))

        assert migrate_db.check_tables() is False


class TestAlembicConfig:

    def test_paths_resolve_from_script_location(self):
        alembic_cfg = migrate_db._alembic_config()

        assert alembic_cfg.get_main_option("script_location").endswith("alembic")
        assert alembic_cfg.config_file_name.endswith("alembic.ini")
