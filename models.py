"""
SQLite persistence for TruePlace location metrics.

Lightweight design. No ORM, just raw sqlite3.
Holds the current snapshot of ingested metrics (one row per location,
crime stats per location, hate-crime incidents per bias category) and
summarizes it into the dataset fingerprint used to key cached rankings.
"""

import hashlib
import json
import sqlite3
import os
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from location_scorer import RawLocationMetrics
from result_cache import compute_fingerprint

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("TRUEPLACE_DB_PATH", "trueplace.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _now():
    return datetime.now(timezone.utc).isoformat()


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS locations (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            name                TEXT NOT NULL,
            state               TEXT NOT NULL,
            diversity_index     REAL,
            median_housing_cost REAL,
            health_index        REAL,
            has_transit         INTEGER,
            inclusion_friendly  INTEGER,
            updated_at          TEXT NOT NULL,
            UNIQUE (name, state)
        );

        CREATE TABLE IF NOT EXISTS crime_stats (
            location_id     INTEGER PRIMARY KEY REFERENCES locations(id) ON DELETE CASCADE,
            hate_crime_rate REAL,
            violent_rate    REAL,
            property_rate   REAL,
            updated_at      TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS hate_crimes (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            location_id INTEGER NOT NULL REFERENCES locations(id) ON DELETE CASCADE,
            bias_type   TEXT NOT NULL,
            incidents   INTEGER NOT NULL DEFAULT 0,
            updated_at  TEXT NOT NULL,
            UNIQUE (location_id, bias_type)
        );

        CREATE INDEX IF NOT EXISTS idx_locations_state ON locations(state);
        CREATE INDEX IF NOT EXISTS idx_hate_crimes_bias ON hate_crimes(bias_type);
    """)
    conn.commit()
    conn.close()


def _as_flag(value):
    if value is None:
        return None
    return 1 if value else 0


# ---------------------------------------------------------------------------
# Writes (ingestion)
# ---------------------------------------------------------------------------

def upsert_location(name, state, diversity_index=None, median_housing_cost=None,
                    health_index=None, has_transit=None, inclusion_friendly=None):
    """Insert or update a location by (name, state). Returns its id."""
    state = state.strip().upper()
    conn = _get_db()
    conn.execute(
        """INSERT INTO locations
               (name, state, diversity_index, median_housing_cost, health_index,
                has_transit, inclusion_friendly, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (name, state) DO UPDATE SET
               diversity_index = excluded.diversity_index,
               median_housing_cost = excluded.median_housing_cost,
               health_index = excluded.health_index,
               has_transit = excluded.has_transit,
               inclusion_friendly = excluded.inclusion_friendly,
               updated_at = excluded.updated_at""",
        (
            name.strip(), state, diversity_index, median_housing_cost, health_index,
            _as_flag(has_transit), _as_flag(inclusion_friendly), _now(),
        ),
    )
    row = conn.execute(
        "SELECT id FROM locations WHERE name = ? AND state = ?", (name.strip(), state)
    ).fetchone()
    conn.commit()
    conn.close()
    return row["id"]


def set_crime_stats(location_id, hate_crime_rate=None, violent_rate=None, property_rate=None):
    """Replace the crime stats row for a location."""
    conn = _get_db()
    conn.execute(
        """INSERT OR REPLACE INTO crime_stats
               (location_id, hate_crime_rate, violent_rate, property_rate, updated_at)
           VALUES (?, ?, ?, ?, ?)""",
        (location_id, hate_crime_rate, violent_rate, property_rate, _now()),
    )
    conn.commit()
    conn.close()


def add_hate_crime(location_id, bias_type, incidents):
    """Record the incident count for one bias category (upsert)."""
    conn = _get_db()
    conn.execute(
        """INSERT INTO hate_crimes (location_id, bias_type, incidents, updated_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (location_id, bias_type) DO UPDATE SET
               incidents = excluded.incidents,
               updated_at = excluded.updated_at""",
        (location_id, bias_type, int(incidents), _now()),
    )
    conn.commit()
    conn.close()


def replace_hate_crimes(location_id, incidents_by_bias):
    """Make *incidents_by_bias* the complete bias breakdown for a location.

    Categories absent from the mapping are deleted, so a re-ingest never
    leaves rows behind for cells that were blanked or columns that were
    dropped.
    """
    now = _now()
    conn = _get_db()
    try:
        conn.execute("DELETE FROM hate_crimes WHERE location_id = ?", (location_id,))
        conn.executemany(
            """INSERT INTO hate_crimes (location_id, bias_type, incidents, updated_at)
               VALUES (?, ?, ?, ?)""",
            [(location_id, bias_type, int(n), now) for bias_type, n in incidents_by_bias.items()],
        )
        conn.commit()
    finally:
        conn.close()


def delete_locations_except(keep_ids):
    """Delete every location (and its crime/bias rows) not in *keep_ids*.

    Returns the number of locations removed.
    """
    keep_ids = list(keep_ids)
    conn = _get_db()
    try:
        if keep_ids:
            cur = conn.execute(
                f"DELETE FROM locations WHERE id NOT IN ({','.join('?' for _ in keep_ids)})",
                tuple(keep_ids),
            )
        else:
            cur = conn.execute("DELETE FROM locations")
        conn.commit()
        removed = cur.rowcount
    finally:
        conn.close()
    if removed:
        logger.info("Removed %d locations absent from the source", removed)
    return removed


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def list_locations():
    """All locations as [{"id", "name", "state"}], ordered by name."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT id, name, state FROM locations ORDER BY name, state"
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]


def get_location(location_id):
    """Load one location row as a dict, or None if not found."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM locations WHERE id = ?", (location_id,)
    ).fetchone()
    conn.close()
    return dict(row) if row else None


def find_location_by_name(name, state=None):
    """Case-insensitive lookup by name (and optionally state)."""
    conn = _get_db()
    if state:
        row = conn.execute(
            """SELECT * FROM locations
               WHERE lower(name) = lower(?) AND upper(state) = upper(?)
               ORDER BY id LIMIT 1""",
            (name.strip(), state.strip()),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM locations WHERE lower(name) = lower(?) ORDER BY id LIMIT 1",
            (name.strip(),),
        ).fetchone()
    conn.close()
    return dict(row) if row else None


def _bias_map(conn, location_ids=None) -> Dict[int, Dict[str, int]]:
    query = "SELECT location_id, bias_type, incidents FROM hate_crimes"
    params: tuple = ()
    if location_ids is not None:
        placeholders = ",".join("?" for _ in location_ids)
        query += f" WHERE location_id IN ({placeholders})"
        params = tuple(location_ids)
    out: Dict[int, Dict[str, int]] = {}
    for row in conn.execute(query + " ORDER BY bias_type", params).fetchall():
        out.setdefault(row["location_id"], {})[row["bias_type"]] = row["incidents"]
    return out


def _row_to_metrics(row, bias) -> RawLocationMetrics:
    def _flag(value):
        return None if value is None else bool(value)

    return RawLocationMetrics(
        name=row["name"],
        region=row["state"],
        hate_crime_rate_per_100k=row["hate_crime_rate"],
        violent_crime_rate_per_100k=row["violent_rate"],
        diversity_index=row["diversity_index"],
        median_monthly_housing_cost=row["median_housing_cost"],
        health_index=row["health_index"],
        bias_incidents=bias,
        has_transit=_flag(row["has_transit"]),
        inclusion_friendly=_flag(row["inclusion_friendly"]),
        location_id=row["id"],
    )


def load_location_metrics(location_ids: Optional[Iterable[int]] = None) -> List[RawLocationMetrics]:
    """Join locations with crime stats and bias incidents into scorer inputs."""
    ids = list(location_ids) if location_ids is not None else None
    if ids is not None and not ids:
        return []
    conn = _get_db()
    try:
        query = """SELECT l.*, c.hate_crime_rate, c.violent_rate
                   FROM locations l
                   LEFT JOIN crime_stats c ON c.location_id = l.id"""
        params: tuple = ()
        if ids is not None:
            query += f" WHERE l.id IN ({','.join('?' for _ in ids)})"
            params = tuple(ids)
        rows = conn.execute(query + " ORDER BY l.id", params).fetchall()
        bias = _bias_map(conn, ids)
    finally:
        conn.close()
    return [_row_to_metrics(row, bias.get(row["id"], {})) for row in rows]


def get_location_stats(location_id):
    """Raw stats for the location detail view."""
    conn = _get_db()
    try:
        crime = conn.execute(
            """SELECT hate_crime_rate, violent_rate, property_rate
               FROM crime_stats WHERE location_id = ?""",
            (location_id,),
        ).fetchone()
        by_bias = conn.execute(
            """SELECT bias_type, incidents FROM hate_crimes
               WHERE location_id = ? ORDER BY bias_type""",
            (location_id,),
        ).fetchall()
    finally:
        conn.close()
    return {
        "hateCrimes": {
            "byBias": [{"biasType": r["bias_type"], "incidents": r["incidents"]} for r in by_bias],
        },
        "crimeStats": {
            "hateCrimeRate": crime["hate_crime_rate"],
            "violentRate": crime["violent_rate"],
            "propertyRate": crime["property_rate"],
        } if crime else None,
    }


def bias_incidents_by_location(bias_types) -> Dict[int, int]:
    """Total incidents per location across *bias_types*.

    Locations with no rows for any of the types are absent from the result.
    """
    bias_types = list(bias_types)
    if not bias_types:
        return {}
    conn = _get_db()
    rows = conn.execute(
        f"""SELECT location_id, SUM(incidents) AS total FROM hate_crimes
            WHERE bias_type IN ({','.join('?' for _ in bias_types)})
            GROUP BY location_id""",
        tuple(bias_types),
    ).fetchall()
    conn.close()
    return {row["location_id"]: row["total"] or 0 for row in rows}


# ---------------------------------------------------------------------------
# Dataset fingerprint
# ---------------------------------------------------------------------------

def _table_digest(conn, query):
    """sha256 over the ordered rows of *query* (first 16 hex chars).

    Sums alone miss changes that cancel out, e.g. two locations swapping
    metrics; the ordered row listing does not.
    """
    h = hashlib.sha256()
    for row in conn.execute(query):
        h.update(json.dumps(list(row), separators=(",", ":")).encode())
        h.update(b"\n")
    return h.hexdigest()[:16]


def dataset_summary():
    """Record counts, key aggregate sums and a row digest per scored table.

    The digests cover every scored column (not updated_at), so any insert,
    delete or metric change alters the summary while re-ingesting identical
    data leaves it unchanged.
    """
    conn = _get_db()
    try:
        loc = conn.execute(
            """SELECT COUNT(*) AS n,
                      COALESCE(SUM(diversity_index), 0) AS diversity,
                      COALESCE(SUM(median_housing_cost), 0) AS housing,
                      COALESCE(SUM(health_index), 0) AS health,
                      COALESCE(SUM(has_transit), 0) AS transit,
                      COALESCE(SUM(inclusion_friendly), 0) AS inclusion
               FROM locations"""
        ).fetchone()
        crime = conn.execute(
            """SELECT COUNT(*) AS n,
                      COALESCE(SUM(hate_crime_rate), 0) AS hate_rate,
                      COALESCE(SUM(violent_rate), 0) AS violent_rate,
                      COALESCE(SUM(property_rate), 0) AS property_rate
               FROM crime_stats"""
        ).fetchone()
        hate = conn.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(incidents), 0) AS incidents FROM hate_crimes"
        ).fetchone()
        digests = {
            "locations": _table_digest(
                conn,
                """SELECT id, name, state, diversity_index, median_housing_cost,
                          health_index, has_transit, inclusion_friendly
                   FROM locations ORDER BY id""",
            ),
            "crimeStats": _table_digest(
                conn,
                """SELECT location_id, hate_crime_rate, violent_rate, property_rate
                   FROM crime_stats ORDER BY location_id""",
            ),
            "hateCrimes": _table_digest(
                conn,
                """SELECT location_id, bias_type, incidents
                   FROM hate_crimes ORDER BY location_id, bias_type""",
            ),
        }
    finally:
        conn.close()
    return {
        "counts": {
            "locations": loc["n"],
            "crimeStats": crime["n"],
            "hateCrimes": hate["n"],
        },
        "sums": {
            "diversityIndex": loc["diversity"],
            "medianHousingCost": loc["housing"],
            "healthIndex": loc["health"],
            "hasTransit": loc["transit"],
            "inclusionFriendly": loc["inclusion"],
            "hateCrimeRate": crime["hate_rate"],
            "violentRate": crime["violent_rate"],
            "propertyRate": crime["property_rate"],
            "hateCrimesIncidents": hate["incidents"],
        },
        "digests": digests,
    }


def dataset_last_updated():
    """Latest updated_at per table (None for empty tables)."""
    conn = _get_db()
    try:
        out = {}
        for key, table in (("locations", "locations"),
                           ("crimeStats", "crime_stats"),
                           ("hateCrimes", "hate_crimes")):
            row = conn.execute(f"SELECT MAX(updated_at) AS ts FROM {table}").fetchone()
            out[key] = row["ts"]
    finally:
        conn.close()
    return out


def dataset_fingerprint() -> str:
    """12-hex-char digest of dataset_summary()."""
    return compute_fingerprint(dataset_summary())
