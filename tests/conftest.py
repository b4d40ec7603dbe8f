"""Shared fixtures for TruePlace test suite.

Provides a Flask test client wired to a temporary SQLite database,
a fresh result cache per test, and a small seeded dataset.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["TRUEPLACE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Keep the limiter out of the way of route tests
os.environ.setdefault("RATE_LIMIT_DEFAULT", "10000/minute")

from app import app, result_cache  # noqa: E402
from models import (  # noqa: E402
    init_db,
    _get_db,
    upsert_location,
    set_crime_stats,
    add_hate_crime,
)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database and the result cache before every test."""
    init_db()
    conn = _get_db()
    for table in ("hate_crimes", "crime_stats", "locations"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    result_cache.clear()
    yield


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


# (name, state, hate, violent, diversity, cost, health, bias)
SEED_LOCATIONS = [
    ("Alpha", "WA", 0, 0, 0.9, 1000, 90, {"Anti-Black": 3}),
    ("Bravo", "OR", 25, 1000, 0.5, 2000, 60, {"Anti-LGBTQ": 2}),
    ("Charlie", "WA", 50, 2000, 0.2, 4000, 40, {}),
    ("Delta", "TX", 10, 400, 0.7, 1500, 70, {"Anti-Black": 1, "Anti-LGBTQ": 5}),
]


@pytest.fixture()
def seeded():
    """Insert SEED_LOCATIONS; returns {name: location_id}.

    Default (balanced) composites: Alpha 95, Delta 76, Bravo 53, Charlie 12.
    """
    ids = {}
    for name, state, hate, violent, diversity, cost, health, bias in SEED_LOCATIONS:
        loc_id = upsert_location(
            name, state,
            diversity_index=diversity,
            median_housing_cost=cost,
            health_index=health,
        )
        set_crime_stats(loc_id, hate_crime_rate=hate, violent_rate=violent, property_rate=1000)
        for bias_type, incidents in bias.items():
            add_hate_crime(loc_id, bias_type, incidents)
        ids[name] = loc_id
    return ids
