"""
DB engine and session. Engine is created lazily on first use so importing models
or the store never opens a connection. Uses secrets provider for DATABASE_URL.
"""
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker

from apps.shared.config import DATABASE_URL_DEFAULT
from apps.shared.env_helpers import parse_int
from apps.shared.secrets import get_secret

logger = logging.getLogger(__name__)

POOL_SIZE = parse_int(get_secret("DB_POOL_SIZE", ""), default=5, min_val=1, name="DB_POOL_SIZE")
MAX_OVERFLOW = parse_int(get_secret("DB_MAX_OVERFLOW", ""), default=10, min_val=0, name="DB_MAX_OVERFLOW")
POOL_RECYCLE = parse_int(get_secret("DB_POOL_RECYCLE", ""), default=1800, min_val=60, name="DB_POOL_RECYCLE")
POOL_TIMEOUT = parse_int(get_secret("DB_POOL_TIMEOUT", ""), default=30, min_val=1, name="DB_POOL_TIMEOUT")

_engine: Optional[Engine] = None
_sessionmaker: Optional[sessionmaker] = None


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine
    url = get_secret("DATABASE_URL", DATABASE_URL_DEFAULT)
    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_pre_ping=True,
            pool_recycle=POOL_RECYCLE,
            pool_timeout=POOL_TIMEOUT,
        )
    return _engine


def get_sessionmaker() -> sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
            expire_on_commit=False,
        )
    return _sessionmaker


def init_db() -> None:
    """
    Bootstrap DB: Alembic upgrade head when alembic.ini is found next to the repo root;
    otherwise (or on failure) Base.metadata.create_all(). Idempotent.
    """
    repo_root = Path(__file__).resolve().parents[3]
    alembic_ini = repo_root / "alembic.ini"
    if alembic_ini.exists() and (repo_root / "alembic").is_dir():
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "-c", str(alembic_ini), "upgrade", "head"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
        )
        if result.returncode == 0:
            logger.info("DB bootstrap: alembic upgrade head succeeded")
            return
        logger.warning(
            "DB bootstrap: alembic upgrade head failed (exit %s), falling back to create_all: %s",
            result.returncode,
            (result.stderr or result.stdout or "").strip()[:500],
        )

    from apps.api.db.models import Base
    Base.metadata.create_all(get_engine())
    logger.info("DB bootstrap: Base.metadata.create_all")


def check_db() -> bool:
    """Return True if DB is reachable."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except DBAPIError as e:
        logger.debug("DB unreachable: %s", e)
        return False
