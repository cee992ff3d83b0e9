"""Health and readiness endpoints."""

from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings

router = APIRouter()


def get_version() -> str:
    """Installed distribution version, "dev" when running from a checkout."""
    try:
        return version("credit-control-chaser")
    except PackageNotFoundError:
        return "dev"


@lru_cache(maxsize=1)
def get_health_engine() -> Engine:
    return create_engine(settings.database_url, future=True, pool_pre_ping=True)


def check_database(engine: Engine) -> str:
    """Check database connectivity with light query."""
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
            return "OK" if row and row.health_check == 1 else "FAIL"
    except SQLAlchemyError:
        return "FAIL"


@router.get("/health/ready")
def readiness_check(engine: Engine = Depends(get_health_engine)) -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database(engine)
    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
