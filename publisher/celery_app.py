"""Celery application setup for asynchronous publish batches."""

from __future__ import annotations

import os
from typing import Optional

from celery import Celery


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(0, parsed)


def _sqla_broker_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("sqla+") else f"sqla+{db_url}"


def _db_backend_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("db+") else f"db+{db_url}"


def create_celery_app() -> Celery:
    """Instantiate the Celery app with environment driven configuration."""

    db_url = os.getenv("PUBLISHER_DATABASE_URL")
    broker_url = os.getenv("PUBLISHER_CELERY_BROKER_URL") or _sqla_broker_from_db(db_url) or "memory://"
    backend_url = os.getenv("PUBLISHER_CELERY_RESULT_BACKEND") or _db_backend_from_db(db_url) or "cache+memory://"

    app = Celery("publisher", broker=broker_url, backend=backend_url, include=["publisher.tasks"])
    conf_updates = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "task_always_eager": _env_bool("PUBLISHER_CELERY_TASK_ALWAYS_EAGER", True),
        "task_acks_late": False,
        "worker_prefetch_multiplier": 1,
        "task_soft_time_limit": _env_int("PUBLISHER_PUBLISH_SOFT_TIME_LIMIT", 540),
        "task_time_limit": _env_int("PUBLISHER_PUBLISH_TIME_LIMIT", 600),
        "broker_connection_retry_on_startup": True,
    }
    if backend_url.startswith("db+"):
        conf_updates["database_engine_options"] = {"pool_size": 2, "max_overflow": 0, "pool_pre_ping": True}
        conf_updates["database_short_lived_sessions"] = True
    app.conf.update(**conf_updates)
    return app


celery_app = create_celery_app()


__all__ = ["celery_app", "create_celery_app"]
