import os
import logging
import uuid
from datetime import datetime, timezone

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from location_scorer import (
    ConfigurationError,
    MalformedMetricsError,
    RawLocationMetrics,
    WeightProfile,
    compute_score,
    compute_scores,
    get_citations,
    legacy_preferences_to_profile,
)
from models import (
    init_db,
    _get_db,
    list_locations,
    get_location,
    find_location_by_name,
    get_location_stats,
    load_location_metrics,
    bias_incidents_by_location,
    dataset_summary,
    dataset_last_updated,
    dataset_fingerprint,
)
from ranking import ScoreQuery, rank_locations, paginate, profile_from_args
from result_cache import ResultCache, build_cache_key, DEFAULT_TTL_SECONDS
from scoring_config import SCORING_MODEL

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN (silent when unset in local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
    )

app = Flask(__name__)

# Proxy fix: behind a PaaS reverse proxy, rewrite request.remote_addr to
# the real client IP so Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting.  In-memory storage is per-process (with 2 gunicorn workers
# the effective limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")

# ---------------------------------------------------------------------------
# Ranked-result cache: one per process, keyed by dataset fingerprint
# ---------------------------------------------------------------------------
CACHE_TTL_SECONDS = float(os.environ.get("CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
result_cache = ResultCache(ttl_seconds=CACHE_TTL_SECONDS)

_legacy_match_warned = False


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


def _error(message, status):
    return jsonify({"error": message, "request_id": getattr(g, "request_id", None)}), status


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    return jsonify({"status": "ok", "model_version": SCORING_MODEL.version})


@app.route("/ready")
@limiter.exempt
def ready():
    """Readiness probe: the metrics store must answer a query."""
    try:
        conn = _get_db()
        conn.execute("SELECT COUNT(*) FROM locations").fetchone()
        conn.close()
    except Exception:
        logger.warning("Readiness check failed", exc_info=True)
        return jsonify({"ready": False}), 503
    return jsonify({"ready": True})


# ---------------------------------------------------------------------------
# Scoring API
# ---------------------------------------------------------------------------

@app.route("/api/citations")
def citations():
    return jsonify({"citations": [c.to_dict() for c in get_citations()]})


@app.route("/api/locations")
def locations():
    return jsonify({"locations": list_locations()})


@app.route("/api/locations/<int:location_id>")
def location_detail(location_id):
    row = get_location(location_id)
    if not row:
        return _error("not found", 404)
    metrics = load_location_metrics([location_id])
    try:
        result = compute_score(metrics[0], WeightProfile.default())
    except MalformedMetricsError as e:
        return _error(f"location cannot be scored: {e}", 422)
    payload = result.to_dict()
    payload["stats"] = get_location_stats(location_id)
    return jsonify(payload)


@app.route("/api/score")
def score():
    """Score one location by name: ?location=Seattle[&state=WA]."""
    name = request.args.get("location", "").strip()
    if not name:
        return _error("location is required", 400)
    try:
        profile = profile_from_args(request.args)
    except ValueError as e:
        return _error(str(e), 400)

    row = find_location_by_name(name, request.args.get("state"))
    if not row:
        return _error("Location not found", 404)

    try:
        result = compute_score(load_location_metrics([row["id"]])[0], profile)
    except ConfigurationError as e:
        return _error(str(e), 400)
    except MalformedMetricsError as e:
        return _error(f"location cannot be scored: {e}", 422)
    return jsonify(result.to_dict())


@app.route("/api/profile-scores")
def profile_scores():
    """Ranked locations for a preference profile.

    Filters: minSafety, minCommunity, biasType (repeatable), state, q.
    Sort: sortBy=score|safety|community|costQuality, sortDir=asc|desc.
    Page: limit (1-100), offset.  nocache=true forces recomputation.
    Weights: wSafety, wCommunity, wCostQuality (plus wMobility, wInclusion).
    Without any of the first three the preset applies; with any of them
    the unspecified ones count as 0.
    """
    try:
        query = ScoreQuery.from_args(request.args)
    except ValueError as e:
        return _error(str(e), 400)

    profile = query.profile()
    try:
        fingerprint = dataset_fingerprint()
        cache_key = build_cache_key(fingerprint, profile, query.cache_params())

        def _compute():
            bias = bias_incidents_by_location(query.bias_types) if query.bias_types else None
            return rank_locations(load_location_metrics(), profile, query, bias)

        results, hit = result_cache.get_or_compute(cache_key, _compute, bypass=query.nocache)
    except ConfigurationError as e:
        if query.weights or query.budget_max is not None:
            return _error(str(e), 400)
        logger.exception("Scoring configuration error [%s]", g.request_id)
        return _error("Internal server error", 500)

    return jsonify({
        "results": paginate(results, query.limit, query.offset),
        "total": len(results),
        "page": {"limit": query.limit, "offset": query.offset},
        "cache": {"hit": hit, "key": cache_key, "ttlSeconds": result_cache.ttl_seconds},
    })


@app.route("/api/match", methods=["POST"])
def match():
    """Legacy matcher (deprecated): {budgetMax, weights{safety, affordability,
    diversity, mobility, inclusion}} -> compatibility-ranked matches."""
    global _legacy_match_warned
    if not _legacy_match_warned:
        logger.warning("/api/match is deprecated; use /api/profile-scores")
        _legacy_match_warned = True

    preferences = request.get_json(silent=True)
    if not isinstance(preferences, dict):
        preferences = {}
    if not preferences.get("budgetMax") or not preferences.get("weights"):
        return _error("Budget and weights are required", 400)
    try:
        profile = legacy_preferences_to_profile(preferences)
        scored = compute_scores(load_location_metrics(), profile)
    except ConfigurationError as e:
        return _error(str(e), 400)

    scored.sort(key=lambda r: (r.name, r.region))
    scored.sort(key=lambda r: r.composite, reverse=True)
    return jsonify({
        "matches": [
            {
                "name": r.name,
                "state": r.region,
                "compatibilityScore": r.composite,
                "contributions": r.dims,
            }
            for r in scored
        ],
        "preferences": preferences,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.route("/api/admin/dataset")
def admin_dataset():
    """Dataset snapshot: counts, sums, last-updated and fingerprint."""
    if ADMIN_TOKEN and request.headers.get("X-Admin-Token") != ADMIN_TOKEN:
        return _error("forbidden", 403)
    summary = dataset_summary()
    return jsonify({
        **summary,
        "lastUpdated": dataset_last_updated(),
        "citations": [c.to_dict() for c in get_citations()],
        "fingerprint": dataset_fingerprint(),
        "modelVersion": SCORING_MODEL.version,
        "cacheEntries": len(result_cache),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    })


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("not found", 404)


@app.errorhandler(500)
def internal_error(e):
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
