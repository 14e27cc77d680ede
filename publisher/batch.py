"""Batch publishing of approved pages to the CMS."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .assembler import assemble_page
from .audit import build_audit_entry
from .cms_client import CmsApiError, CmsClient
from .config import PublishConfig
from .content import referenced_asset_ids
from .jobs import (
    JobStateError,
    JobStatus,
    Page,
    PublishResult,
    PublishStatus,
    WebJob,
    apply_publish_results,
    utcnow_iso,
)
from .media import MediaResolutionError, MediaResolver, validate_media_bindings

LOGGER = logging.getLogger(__name__)


class NothingToPublishError(ValueError):
    """Raised when the page selection for a publish call is empty."""


class AuditSink(Protocol):
    def append(self, entry: dict[str, Any]) -> bool: ...


@dataclass(slots=True)
class PublishOptions:
    dry_run: bool = False
    retry_failed: bool = False
    update_title: bool = False
    page_status: str = "draft"
    create_missing_pages: bool = False

    @classmethod
    def from_config(cls, config: PublishConfig, **overrides: Any) -> "PublishOptions":
        options = cls(
            update_title=config.update_title,
            page_status=config.page_status,
            create_missing_pages=config.create_missing_pages,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass(slots=True)
class PublishReport:
    job_status: JobStatus
    results: list[PublishResult] = field(default_factory=list)
    dry_run: bool = False
    plan: list[dict[str, Any]] = field(default_factory=list)

    @property
    def pages_ok(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def pages_failed(self) -> int:
        return len(self.results) - self.pages_ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_status": self.job_status.value,
            "dry_run": self.dry_run,
            "results": [result.to_dict() for result in self.results],
            "plan": list(self.plan),
        }


class PagePublishError(RuntimeError):
    """Raised inside the batch loop when a single page cannot be written."""


def select_pages(job: WebJob, *, retry_failed: bool) -> list[Page]:
    if job.require_all_approved and len(job.approved_pages()) != len(job.pages):
        pending = [page.source_key for page in job.pages if not page.is_approved]
        raise JobStateError(
            f"Job {job.job_id} requires every page to be approved; not approved: {', '.join(pending)}"
        )
    pages = job.approved_pages()
    if retry_failed:
        pages = [page for page in pages if page.publish_status == PublishStatus.FAILED]
    if not pages:
        if retry_failed:
            raise NothingToPublishError(f"Job {job.job_id} has no approved pages with a failed publish to retry")
        raise NothingToPublishError(f"Job {job.job_id} has no approved pages to publish")
    return pages


def _plan(job: WebJob, pages: list[Page], client: CmsClient) -> list[dict[str, Any]]:
    plan: list[dict[str, Any]] = []
    for page in pages:
        page_id = page.cms_page_id
        lookup_error = None
        if page_id is None:
            try:
                page_id = client.find_page_id_by_slug(page.target_slug)
            except CmsApiError as exc:
                LOGGER.warning("Dry-run slug lookup failed for %s: %s", page.source_key, exc)
                lookup_error = str(exc)
        entry: dict[str, Any] = {
            "source_key": page.source_key,
            "title": page.title,
            "target_slug": page.target_slug,
            "cms_page_id": page_id,
            "action": "update" if page_id is not None else "create",
            "media_assets": referenced_asset_ids(page.content_blocks()),
        }
        if lookup_error:
            entry["lookup_error"] = lookup_error
        plan.append(entry)
    LOGGER.info("Dry run for job %s planned %d pages", job.job_id, len(plan))
    return plan


def _publish_page(
    job: WebJob,
    page: Page,
    client: CmsClient,
    resolver: MediaResolver,
    options: PublishOptions,
    config: PublishConfig,
) -> PublishResult:
    blocks = page.content_blocks()
    referenced = referenced_asset_ids(blocks)
    resolved = resolver.resolve(job.media_assets, referenced) if referenced else {}
    content = assemble_page(page, resolved, config.media_class_prefix)

    page_id = page.cms_page_id
    if page_id is None:
        page_id = client.find_page_id_by_slug(page.target_slug)

    if page_id is None:
        if not options.create_missing_pages:
            raise PagePublishError(f'No CMS page found with slug "{page.target_slug}"')
        created = client.create_page(page.target_slug, page.title, content, options.page_status)
        return PublishResult(
            source_key=page.source_key,
            ok=True,
            cms_page_id=created.id,
            link=created.link,
            status=created.status,
            action="create",
            attempted_at=utcnow_iso(),
        )

    title = page.title if options.update_title else None
    updated = client.update_page(page_id, content, options.page_status, title=title)
    return PublishResult(
        source_key=page.source_key,
        ok=True,
        cms_page_id=updated.id,
        link=updated.link,
        status=updated.status,
        action="update",
        attempted_at=utcnow_iso(),
    )


def publish(
    job: WebJob,
    client: CmsClient,
    options: PublishOptions | None = None,
    audit_log: AuditSink | None = None,
    config: PublishConfig | None = None,
    *,
    resolver: MediaResolver | None = None,
) -> PublishReport:
    """Publish the selected pages of ``job`` one at a time.

    A failing page is recorded on that page and the loop moves on. Input
    problems (empty selection, defective media bindings) raise before any
    network call. ``dry_run`` leaves the job untouched and only issues
    read-only slug lookups.
    """

    options = options or PublishOptions()
    config = config or PublishConfig()
    pages = select_pages(job, retry_failed=options.retry_failed)
    validate_media_bindings(job.media_assets, [block for page in pages for block in page.content_blocks()])

    if options.dry_run:
        return PublishReport(job_status=job.job_status, dry_run=True, plan=_plan(job, pages, client))

    job.transition(JobStatus.PUBLISHING)
    owns_resolver = resolver is None
    resolver = resolver or MediaResolver(client, config)
    results: list[PublishResult] = []
    try:
        for page in pages:
            try:
                result = _publish_page(job, page, client, resolver, options, config)
            except (CmsApiError, MediaResolutionError, PagePublishError) as exc:
                LOGGER.warning("Publishing %s failed for job %s: %s", page.source_key, job.job_id, exc)
                result = PublishResult(
                    source_key=page.source_key,
                    ok=False,
                    cms_page_id=page.cms_page_id,
                    error=str(exc),
                    attempted_at=utcnow_iso(),
                )
            else:
                LOGGER.info("Published %s to page %s (%s)", page.source_key, result.cms_page_id, result.link)
            results.append(result)
    finally:
        if owns_resolver:
            resolver.close()

    status = apply_publish_results(job, results)
    LOGGER.info(
        "Publish batch for job %s finished as %s: %d ok, %d failed",
        job.job_id,
        status.value,
        sum(1 for result in results if result.ok),
        sum(1 for result in results if not result.ok),
    )
    if audit_log is not None:
        audit_log.append(build_audit_entry(job, results))
    return PublishReport(job_status=status, results=results)


__all__ = [
    "NothingToPublishError",
    "PagePublishError",
    "PublishOptions",
    "PublishReport",
    "publish",
    "select_pages",
]
