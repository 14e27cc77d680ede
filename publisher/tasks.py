"""Celery tasks for asynchronous publishing."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .celery_app import celery_app
from .config import PublishConfig, TimeoutConfig
from .service import PublishingService
from .store import ConcurrentModificationError, JobRepository

LOGGER = logging.getLogger(__name__)

_ENGINE_OPTIONS = {
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


def _build_config(config_payload: Mapping[str, Any]) -> PublishConfig:
    defaults = PublishConfig()
    default_timeout = TimeoutConfig()
    config = PublishConfig(
        log_dir=Path(config_payload.get("log_dir") or defaults.log_dir),
        user_agent=str(config_payload.get("user_agent") or defaults.user_agent),
        page_status=str(config_payload.get("page_status") or defaults.page_status),
        update_title=bool(config_payload.get("update_title", defaults.update_title)),
        create_missing_pages=bool(config_payload.get("create_missing_pages", defaults.create_missing_pages)),
        staging_only=bool(config_payload.get("staging_only", defaults.staging_only)),
        claim_timeout=float(config_payload.get("claim_timeout", defaults.claim_timeout)),
        timeout=TimeoutConfig(
            request_timeout=float(config_payload.get("request_timeout", default_timeout.request_timeout)),
            media_timeout=float(config_payload.get("media_timeout", default_timeout.media_timeout)),
        ),
    )
    config.ensure_directories()
    return config


@lru_cache(maxsize=8)
def _session_factory(db_url: str):
    engine = create_engine(db_url, **_ENGINE_OPTIONS)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@celery_app.task(name="publisher.publish_job", bind=True, max_retries=3, default_retry_delay=5)
def publish_job_task(self: Task, request: Mapping[str, Any]) -> dict[str, Any]:
    job_id = str(request["job_id"])
    options = request.get("options") or {}
    config = _build_config(request.get("config") or {})
    service = PublishingService(JobRepository(_session_factory(str(request["db_url"]))), config)

    try:
        report = service.publish(
            job_id,
            dry_run=bool(options.get("dry_run", False)),
            retry_failed=bool(options.get("retry_failed", False)),
            resume=bool(options.get("resume", False)),
        )
    except ConcurrentModificationError as exc:
        LOGGER.warning("Job %s changed while publishing was requested; retrying", job_id)
        raise self.retry(exc=exc)
    except SoftTimeLimitExceeded:
        LOGGER.error("Publish of job %s hit the time limit; job stays PUBLISHING until its claim expires or a run resumes it", job_id)
        raise

    LOGGER.info("Publish task for job %s finished as %s", job_id, report.job_status.value)
    return report.to_dict()


__all__ = ["publish_job_task"]
