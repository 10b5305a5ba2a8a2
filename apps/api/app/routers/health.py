from __future__ import annotations

from fastapi import APIRouter, HTTPException
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from ..db import check_db_health
from ..redis_client import get_redis_client
from ..settings import settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/db")
def healthz_db() -> dict[str, str]:
    try:
        check_db_health()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="database unavailable") from exc
    return {"status": "ok"}


@router.get("/ready")
def ready() -> dict[str, object]:
    # Redis only backs rate limiting, which degrades open, so it never fails readiness.
    checks = {"db": "ok", "redis": "ok"}
    try:
        check_db_health()
    except SQLAlchemyError:
        checks["db"] = "down"
    try:
        get_redis_client().ping()
    except RedisError:
        checks["redis"] = "degraded"
    if checks["db"] != "ok":
        raise HTTPException(status_code=503, detail={"status": "not_ready", "env": settings.app_env, "checks": checks})
    return {"status": "ready", "env": settings.app_env, "checks": checks}
