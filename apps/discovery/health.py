# apps/discovery/health.py
from __future__ import annotations

import logging
from typing import Any, Dict

from cache import healthcheck as cache_healthcheck
from db import healthcheck as db_healthcheck

log = logging.getLogger("health")


async def check_database() -> Dict[str, Any]:
    """Check if database connection is working."""
    try:
        await db_healthcheck()
        return {"ok": True}
    except Exception as e:
        log.warning("Database health check failed: %s", e)
        return {"ok": False, "error": str(e)}


async def check_cache() -> Dict[str, Any]:
    """Check if Redis is reachable.

    Redis only backs the assignment lock fallback, so a failure here is
    reported but does not mark the service unhealthy.
    """
    try:
        if not await cache_healthcheck():
            raise RuntimeError("Redis ping returned falsy response")
        return {"ok": True}
    except Exception as e:
        log.warning("Cache health check failed: %s", e)
        return {"ok": True, "error": str(e), "optional": True}


async def collect_health_status() -> Dict[str, Any]:
    """
    Run all health checks and return overall status.

    Returns overall "ok": True only if the database is healthy.
    """
    database = await check_database()
    cache = await check_cache()

    return {
        "ok": bool(database.get("ok", False)),
        "checks": {
            "database": database,
            "cache": cache,
        },
    }
