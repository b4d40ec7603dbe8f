"""
Gunicorn config. Each worker process holds its own ResultCache and
rate-limit counters (in-memory), so with --workers 2 a repeated query can
miss once per worker before both are warm.

when_ready hook runs a post-deploy smoke test against localhost once the
server is accepting connections.
"""

import logging
import os
import threading

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
timeout = 30


def when_ready(server):
    """Run smoke test in a background thread once gunicorn is listening."""
    port = os.environ.get("PORT", "8000")
    base_url = f"http://127.0.0.1:{port}"

    def _run_smoke():
        import time
        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            from smoke_test import run_tests
            logger.info("Post-deploy smoke test starting against %s", base_url)
            if run_tests(base_url):
                logger.info("Post-deploy smoke test PASSED")
            else:
                logger.error("Post-deploy smoke test FAILED")
        except Exception:
            logger.exception("Post-deploy smoke test crashed")

    t = threading.Thread(target=_run_smoke, daemon=True)
    t.start()


def post_fork(server, worker):
    """Make sure the schema exists before this worker serves requests."""
    try:
        from models import init_db
        init_db()
    except Exception:
        logging.getLogger(__name__).exception("Failed to initialize database in worker %s", worker.pid)
