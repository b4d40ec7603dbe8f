"""
Ranked-result cache keyed by dataset fingerprint.

A cache key is ``<fingerprint>:<canonical JSON of weights + query>``, so
any change to the underlying data produces a new fingerprint and stale
entries simply stop matching.  Entries also expire after a fixed TTL.

ResultCache is an explicit component: construct one at process start
(app.py does) and pass a fake clock in tests.  The table is guarded by a
lock; concurrent misses on the same key may both compute, and the last
writer wins.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from location_scorer import WeightProfile, effective_weights

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600  # 10 minutes
FINGERPRINT_LENGTH = 12
WEIGHT_PRECISION = 6  # decimal places kept for normalized weights in keys

QueryValue = Union[str, Sequence[str], int, float, bool, None]


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_fingerprint(summary: Mapping[str, Any]) -> str:
    """Short digest of a dataset summary (counts, sums and row digests).

    Key order in *summary* does not matter; any changed value changes
    the digest.
    """
    digest = hashlib.sha256(_canonical_json(summary).encode()).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def _canonical_params(query_params: Mapping[str, QueryValue]) -> Dict[str, Any]:
    """Drop empty values; sort and de-duplicate multi-valued params."""
    out: Dict[str, Any] = {}
    for key, value in query_params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            values = sorted({str(v) for v in value if v is not None and str(v) != ""})
            if values:
                out[str(key)] = values
        elif isinstance(value, str):
            if value != "":
                out[str(key)] = value
        else:
            out[str(key)] = value
    return out


def _canonical_weights(weights: WeightProfile) -> Dict[str, Any]:
    """Normalized weight shares plus budget: what actually shapes a score.

    Proportional profiles ({2, 2, 1} and {4, 4, 2}) serialize identically.
    Raises ConfigurationError for profiles that cannot be scored.
    """
    shares = effective_weights(weights)
    return {
        "shares": {kind.value: round(share, WEIGHT_PRECISION) for kind, share in shares.items()},
        "budgetMax": weights.budget_max,
    }


def build_cache_key(
    fingerprint: str,
    weights: WeightProfile,
    query_params: Mapping[str, QueryValue],
) -> str:
    """Deterministic cache key for one ranking request.

    Requests with the same effective weights and parameters against the
    same dataset fingerprint always produce the same key.
    """
    payload = {
        "weights": _canonical_weights(weights),
        "params": _canonical_params(query_params),
    }
    return f"{fingerprint}:{_canonical_json(payload)}"


@dataclass
class CacheEntry:
    key: str
    results: List[Any]
    computed_at: float
    expires_at: float


class ResultCache:
    """Thread-safe in-process TTL cache for computed rankings."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for *key*, or None on a miss or expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, results: List[Any]) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            key=key,
            results=list(results),
            computed_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], List[Any]],
        bypass: bool = False,
    ) -> Tuple[List[Any], bool]:
        """Return (results, hit).

        On a miss, or when *bypass* is set, *compute* runs outside the lock
        and its result is written through to the cache.
        """
        if not bypass:
            entry = self.get(key)
            if entry is not None:
                return entry.results, True

        t0 = time.time()
        results = compute()
        self.set(key, results)
        logger.info(
            "Result cache %s for %s: computed %d results in %.1fms",
            "bypass" if bypass else "miss",
            key.split(":", 1)[0],
            len(results),
            (time.time() - t0) * 1000,
        )
        return results, False

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
