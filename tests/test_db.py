import pytest
from sqlalchemy import inspect

from leadscout import db


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("postgres://u:p@h/db", "postgresql://u:p@h/db"),
        ("postgresql+psycopg://u:p@h/db", "postgresql+psycopg2://u:p@h/db"),
        ("  sqlite://  ", "sqlite://"),
    ],
)
def test_database_url_is_normalized(raw, expected):
    assert db._normalize_database_url(raw) == expected


def test_missing_database_url_is_loud(monkeypatch):
    monkeypatch.setattr(db, "_engine", None)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        db.get_engine()


def test_engine_is_built_once_and_tables_created(monkeypatch):
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setenv("DATABASE_URL", "sqlite://")

    eng = db.init_db()

    assert db.get_engine() is eng
    tables = set(inspect(eng).get_table_names())
    assert {"scraping_jobs", "analyzed_businesses", "leads"} <= tables
    eng.dispose()
