import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    from engine_settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def small_settings():
    """Engine settings with a small evolution budget and a fixed seed."""
    from engine_settings import EngineSettings

    return EngineSettings().with_overrides(
        {"evolution": {"population_size": 12, "generations": 4, "seed": 11}}
    )


@pytest.fixture
def fresh_record(small_settings):
    from engines.progression import new_progression_record

    return new_progression_record("alice", settings=small_settings)
