#!/usr/bin/env python3
"""
Load location metrics from a CSV into the TruePlace metrics store.

Input: a local CSV path or an http(s) URL.  One row per location:

    name,state,hate_crime_rate,violent_rate,property_rate,diversity_index,
    median_housing_cost,health_index,has_transit,inclusion_friendly,
    bias:Anti-Black,bias:Anti-LGBTQ,...

Columns prefixed "bias:" are per-bias-category hate-crime incident counts.
Blank cells are stored as NULL and scored with the neutral defaults.

Idempotent: locations are upserted by (name, state) and each location's
bias breakdown is replaced wholesale.  With --prune, locations missing
from the CSV are deleted, making the store an exact snapshot of it.

Usage:
    python scripts/ingest_locations.py data/locations_sample.csv
    python scripts/ingest_locations.py https://example.org/metrics.csv --dry-run
    python scripts/ingest_locations.py data/locations_sample.csv --verify
    python scripts/ingest_locations.py data/locations_sample.csv --prune
"""

import argparse
import csv
import io
import logging
import os
import sys

import requests

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from location_scorer import MalformedMetricsError, RawLocationMetrics
from models import (
    init_db,
    upsert_location,
    set_crime_stats,
    replace_hate_crimes,
    delete_locations_except,
    dataset_summary,
    dataset_fingerprint,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

BIAS_PREFIX = "bias:"
_FETCH_TIMEOUT = 30  # seconds


def read_source(source: str) -> str:
    """Return CSV text from a local path or an http(s) URL."""
    if source.startswith(("http://", "https://")):
        resp = requests.get(source, timeout=_FETCH_TIMEOUT)
        resp.raise_for_status()
        return resp.text
    with open(source, encoding="utf-8-sig") as f:
        return f.read()


def _number(value):
    value = (value or "").strip()
    return float(value) if value else None


def parse_rows(text: str):
    """Yield (metrics, property_rate) per CSV row; malformed rows are logged and skipped."""
    reader = csv.DictReader(io.StringIO(text))
    for line_no, row in enumerate(reader, start=2):
        bias = {
            key[len(BIAS_PREFIX):].strip(): value
            for key, value in row.items()
            if key and key.startswith(BIAS_PREFIX) and (value or "").strip()
        }
        record = {
            "name": (row.get("name") or "").strip(),
            "state": (row.get("state") or "").strip().upper(),
            "hate_crime_rate_per_100k": row.get("hate_crime_rate"),
            "violent_crime_rate_per_100k": row.get("violent_rate"),
            "diversity_index": row.get("diversity_index"),
            "median_monthly_housing_cost": row.get("median_housing_cost"),
            "health_index": row.get("health_index"),
            "has_transit": row.get("has_transit") or None,
            "inclusion_friendly": row.get("inclusion_friendly") or None,
            "bias_incidents": bias,
        }
        if not record["name"] or not record["state"]:
            logger.warning("Line %d: name and state are required, skipping", line_no)
            continue
        try:
            metrics = RawLocationMetrics.from_dict(record)
            property_rate = _number(row.get("property_rate"))
        except (MalformedMetricsError, ValueError) as e:
            logger.warning("Line %d (%s): %s, skipping", line_no, record["name"], e)
            continue
        yield metrics, property_rate


def ingest(source: str, dry_run: bool = False, prune: bool = False) -> int:
    text = read_source(source)
    rows = list(parse_rows(text))
    logger.info("Parsed %d location rows from %s", len(rows), source)

    if dry_run:
        for metrics, _ in rows[:5]:
            logger.info("  %s, %s: %s", metrics.name, metrics.region, metrics)
        return len(rows)

    init_db()
    before = dataset_fingerprint()
    loaded_ids = []
    for metrics, property_rate in rows:
        location_id = upsert_location(
            metrics.name,
            metrics.region,
            diversity_index=metrics.diversity_index,
            median_housing_cost=metrics.median_monthly_housing_cost,
            health_index=metrics.health_index,
            has_transit=metrics.has_transit,
            inclusion_friendly=metrics.inclusion_friendly,
        )
        set_crime_stats(
            location_id,
            hate_crime_rate=metrics.hate_crime_rate_per_100k,
            violent_rate=metrics.violent_crime_rate_per_100k,
            property_rate=property_rate,
        )
        replace_hate_crimes(location_id, metrics.bias_incidents)
        loaded_ids.append(location_id)

    removed = delete_locations_except(loaded_ids) if prune else 0

    after = dataset_fingerprint()
    logger.info("=" * 50)
    logger.info("LOCATION INGESTION COMPLETE")
    logger.info("  Rows loaded:  %d", len(rows))
    logger.info("  Pruned:       %d", removed)
    logger.info("  Fingerprint:  %s -> %s", before, after)
    logger.info("=" * 50)
    return len(rows)


def verify():
    """Quick verification: print the dataset summary and score the top five."""
    from location_scorer import WeightProfile, compute_scores
    from models import load_location_metrics

    summary = dataset_summary()
    logger.info("Counts: %s", summary["counts"])
    scored = compute_scores(load_location_metrics(), WeightProfile.default())
    scored.sort(key=lambda r: r.composite, reverse=True)
    for r in scored[:5]:
        logger.info("  %-24s %s  composite=%d dims=%s", r.name, r.region, r.composite, r.dims)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ingest location metrics CSV")
    parser.add_argument("source", help="CSV file path or http(s) URL.")
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Parse and validate only; do not write to the database.",
    )
    parser.add_argument(
        "--verify", action="store_true",
        help="Run verification after ingestion.",
    )
    parser.add_argument(
        "--prune", action="store_true",
        help="Delete locations that are not in the source.",
    )
    args = parser.parse_args()

    ingest(args.source, dry_run=args.dry_run, prune=args.prune)
    if args.verify and not args.dry_run:
        verify()
