"""Database persistence for website jobs and publish logs."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from models import PublishLogRecord, WebJobRecord

from .batch import PublishReport
from .jobs import JobValidationError, WebJob

LOGGER = logging.getLogger(__name__)


class JobPersistenceError(RuntimeError):
    """Raised when a job cannot be read from or written to the database."""


class JobNotFoundError(JobPersistenceError):
    """Raised when no job exists for an id."""


class ConcurrentModificationError(JobPersistenceError):
    """Raised when a job changed in the database since it was loaded."""


def _job_uuid(job_id: str) -> UUID:
    try:
        return UUID(str(job_id))
    except ValueError as exc:
        raise JobNotFoundError(f"Invalid job id {job_id!r}") from exc


class JobRepository:
    """Stores each job as one versioned JSON record with compare-and-swap saves."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def create(self, job: WebJob) -> WebJob:
        job.revision = 1
        try:
            with self._session_factory() as session:
                session.add(
                    WebJobRecord(
                        id=_job_uuid(job.job_id),
                        site_key=job.site_key,
                        brand=job.brand,
                        job_status=job.job_status.value,
                        revision=job.revision,
                        payload=job.to_dict(),
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            job.revision = 0
            raise JobPersistenceError(str(exc)) from exc
        LOGGER.debug("Stored new job %s", job.job_id)
        return job

    def load(self, job_id: str) -> WebJob:
        try:
            with self._session_factory() as session:
                record = session.get(WebJobRecord, _job_uuid(job_id))
                if record is None:
                    raise JobNotFoundError(f"Job {job_id} not found")
                payload = dict(record.payload)
                revision = record.revision
        except SQLAlchemyError as exc:
            raise JobPersistenceError(str(exc)) from exc

        payload["revision"] = revision
        try:
            return WebJob.from_dict(payload)
        except JobValidationError as exc:
            raise JobPersistenceError(f"Stored job {job_id} is invalid: {exc}") from exc

    def save(self, job: WebJob, expected_revision: int | None = None) -> WebJob:
        """Write ``job`` only if the stored revision still equals ``expected_revision``."""

        expected = job.revision if expected_revision is None else expected_revision
        next_revision = expected + 1
        payload = job.to_dict()
        payload["revision"] = next_revision
        job_uuid = _job_uuid(job.job_id)
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(WebJobRecord)
                    .where(WebJobRecord.id == job_uuid, WebJobRecord.revision == expected)
                    .values(
                        site_key=job.site_key,
                        brand=job.brand,
                        job_status=job.job_status.value,
                        revision=next_revision,
                        payload=payload,
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    if session.get(WebJobRecord, job_uuid) is None:
                        raise JobNotFoundError(f"Job {job.job_id} not found")
                    raise ConcurrentModificationError(
                        f"Job {job.job_id} was modified concurrently (expected revision {expected})"
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise JobPersistenceError(str(exc)) from exc
        job.revision = next_revision
        return job

    def record_publish_log(self, job: WebJob, report: PublishReport, *, error: str | None = None) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    PublishLogRecord(
                        job_id=_job_uuid(job.job_id),
                        site_key=job.site_key,
                        job_status=report.job_status.value,
                        dry_run=report.dry_run,
                        pages_ok=report.pages_ok,
                        pages_failed=report.pages_failed,
                        results=report.to_dict(),
                        error=error,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise JobPersistenceError(str(exc)) from exc

    def list_publish_logs(self, job_id: str) -> list[PublishLogRecord]:
        try:
            with self._session_factory() as session:
                records = (
                    session.query(PublishLogRecord)
                    .filter(PublishLogRecord.job_id == _job_uuid(job_id))
                    .order_by(PublishLogRecord.created_at)
                    .all()
                )
                session.expunge_all()
                return records
        except SQLAlchemyError as exc:
            raise JobPersistenceError(str(exc)) from exc


__all__ = [
    "ConcurrentModificationError",
    "JobNotFoundError",
    "JobPersistenceError",
    "JobRepository",
]
