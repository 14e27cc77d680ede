"""Job-facing operations: load a job, apply one operation, save it back."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .audit import NdjsonAuditLog
from .batch import PublishOptions, PublishReport, publish, select_pages
from .cms_client import CmsClient
from .config import CmsCredentials, PublishConfig, load_cms_credentials
from .jobs import (
    ApprovalStatus,
    Page,
    RefeedPayload,
    WebJob,
    approve_all,
    claim_publishing,
    create_job,
    patch_job,
    request_changes,
    set_page_approval,
)
from .media import validate_media_bindings
from .slugs import SlugLookup, validate_slugs
from .store import JobPersistenceError, JobRepository

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[CmsCredentials, PublishConfig], CmsClient]


@dataclass(slots=True)
class SlugValidation:
    job: WebJob
    lookups: list[SlugLookup]


class PublishingService:
    """Wraps the job operations with repository load/save and credential lookup."""

    def __init__(
        self,
        repository: JobRepository,
        config: PublishConfig | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or PublishConfig()
        self._environ = environ
        self._client_factory = client_factory or (lambda credentials, config: CmsClient(credentials, config))

    def _client_for(self, job: WebJob) -> CmsClient:
        credentials = load_cms_credentials(
            job.site_key,
            self._environ,
            staging_only=self._config.staging_only,
        )
        return self._client_factory(credentials, self._config)

    def get_job(self, job_id: str) -> WebJob:
        return self._repository.load(job_id)

    def create_job(self, renderer_output: str | Mapping[str, Any], brand: str | None, site_key: str) -> WebJob:
        return self._repository.create(create_job(renderer_output, brand, site_key))

    def patch_job(
        self,
        job_id: str,
        *,
        slug_overrides: Mapping[str, str] | None = None,
        site_key: str | None = None,
        require_all_approved: bool | None = None,
    ) -> WebJob:
        job = self._repository.load(job_id)
        patch_job(
            job,
            slug_overrides=slug_overrides,
            site_key=site_key,
            require_all_approved=require_all_approved,
        )
        return self._repository.save(job)

    def approve_all(self, job_id: str) -> WebJob:
        job = self._repository.load(job_id)
        approve_all(job)
        return self._repository.save(job)

    def set_page_approval(
        self,
        job_id: str,
        source_key: str,
        decision: ApprovalStatus | str,
        notes: str | None = None,
    ) -> Page:
        job = self._repository.load(job_id)
        page = set_page_approval(job, source_key, decision, notes)
        self._repository.save(job)
        return page

    def request_changes(
        self,
        job_id: str,
        feedback: str,
        page_key: str | None = None,
        *,
        actor: str | None = None,
    ) -> RefeedPayload:
        job = self._repository.load(job_id)
        payload = request_changes(job, feedback, page_key, actor=actor)
        self._repository.save(job)
        return payload

    def validate_slugs(self, job_id: str) -> SlugValidation:
        job = self._repository.load(job_id)
        client = self._client_for(job)
        try:
            lookups = validate_slugs(job, client)
        finally:
            client.close()
        return SlugValidation(job=self._repository.save(job), lookups=lookups)

    def publish(
        self,
        job_id: str,
        *,
        dry_run: bool = False,
        retry_failed: bool = False,
        update_title: bool | None = None,
        page_status: str | None = None,
        create_missing_pages: bool | None = None,
        resume: bool = False,
    ) -> PublishReport:
        """Run one publish batch for a stored job.

        Credentials are resolved before anything changes. A real run first
        claims the job by saving it as PUBLISHING under a claim id. A trigger
        that raced the claim fails with ``ConcurrentModificationError``; one
        that loads the claimed job fails with ``JobStateError`` unless it
        passes ``resume`` or the claim is older than ``claim_timeout``.
        """

        job = self._repository.load(job_id)
        options = PublishOptions.from_config(
            self._config,
            dry_run=dry_run,
            retry_failed=retry_failed,
            update_title=update_title,
            page_status=page_status,
            create_missing_pages=create_missing_pages,
        )
        client = self._client_for(job)
        try:
            if dry_run:
                return publish(job, client, options, config=self._config)

            pages = select_pages(job, retry_failed=retry_failed)
            validate_media_bindings(job.media_assets, [block for page in pages for block in page.content_blocks()])
            claim_publishing(job, resume=resume, stale_after=self._config.claim_timeout)
            self._repository.save(job)

            audit_log = NdjsonAuditLog(self._config.audit_log_path)
            report = publish(job, client, options, audit_log, self._config)
        finally:
            client.close()

        self._repository.save(job)
        self._record_log(job, report)
        return report

    def _record_log(self, job: WebJob, report: PublishReport) -> None:
        try:
            self._repository.record_publish_log(job, report)
        except JobPersistenceError as exc:
            LOGGER.warning("Failed to store publish log for job %s: %s", job.job_id, exc)


__all__ = ["PublishingService", "SlugValidation"]
