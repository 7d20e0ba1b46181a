import redis
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from apps.api.db import check_db
from apps.shared.config import REDIS_URL_DEFAULT
from apps.shared.secrets import get_secret

router = APIRouter(tags=["health"])


def _check_redis() -> bool:
    """Return True if Redis is reachable."""
    try:
        url = get_secret("REDIS_URL", REDIS_URL_DEFAULT)
        r = redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2)
        r.ping()
        return True
    except (redis.RedisError, ValueError):
        return False


@router.get("/health/live")
def liveness():
    """Liveness probe: process is running. Always 200. Safe for restarts."""
    return {"status": "ok"}


@router.get("/health/ready")
def readiness(request: Request):
    """
    Readiness: DB must be reachable and the connection manager built. 503 (status=fail) otherwise.
    Redis is reported but not required; pairing leases fall back to process memory without it.
    """
    db_ok = check_db()
    redis_ok = _check_redis()
    manager_ok = getattr(request.app.state, "manager", None) is not None
    body = {
        "status": "ok" if db_ok and manager_ok else "fail",
        "db": "ok" if db_ok else "unreachable",
        "redis": "ok" if redis_ok else "unreachable",
        "manager": "ok" if manager_ok else "not_ready",
    }
    if body["status"] != "ok":
        return JSONResponse(status_code=503, content=body)
    return body


@router.get("/health/detailed")
def health_detailed(request: Request):
    """Extended health: dependency reachability plus pairing attempts live on this worker."""
    db_ok = check_db()
    redis_ok = _check_redis()
    manager = getattr(request.app.state, "manager", None)
    return {
        "status": "ok" if db_ok and redis_ok else "degraded",
        "db": "ok" if db_ok else "unreachable",
        "redis": "ok" if redis_ok else "unreachable",
        "live_pairings": manager.live_pairings() if manager is not None else 0,
    }
