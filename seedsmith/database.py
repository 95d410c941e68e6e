from __future__ import annotations

import logging
from threading import Lock

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from seedsmith.config import get_settings

logger = logging.getLogger(__name__)

_engine_lock = Lock()
_engine: Engine | None = None
_current_url: str | None = None


def _create_engine_with_fallback(url: str) -> Engine:
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool

    try:
        return create_engine(url, **engine_kwargs)
    except ModuleNotFoundError as exc:
        if "psycopg2" not in str(exc) or "psycopg2" not in url:
            raise
        logger.info("psycopg2 is not installed; connecting with psycopg")
        return create_engine(url.replace("psycopg2", "psycopg"), future=True)


def get_engine(url: str | None = None) -> Engine:
    """Return the target engine, creating it on first use or when the URL changes."""

    global _engine, _current_url
    target_url = url or get_settings().database_url

    with _engine_lock:
        if _engine is not None and target_url == _current_url:
            return _engine

        new_engine = _create_engine_with_fallback(target_url)
        if _engine is not None:
            _engine.dispose()
        _engine = new_engine
        _current_url = target_url
        return _engine


def dispose_engine() -> None:
    global _engine, _current_url
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _current_url = None
