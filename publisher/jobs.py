"""Website job aggregate: pages, approval state and the job state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from models import generate_uuid7

from .content import (
    ContentBlock,
    MediaAsset,
    PageBody,
    asset_from_payload,
    asset_to_payload,
    block_from_payload,
    block_to_payload,
)
from .formats import ContentFormat, parse_content_format
from .normalizer import NormalizedOutput, RendererFormatError, normalize_renderer_output

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PublishStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class JobStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    PUBLISHING = "PUBLISHING"
    PUBLISHED = "PUBLISHED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


_SETTLED_STATES = {JobStatus.PUBLISHED, JobStatus.PARTIAL, JobStatus.FAILED}

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.DRAFT: {JobStatus.IN_REVIEW, JobStatus.APPROVED, JobStatus.PUBLISHING},
    JobStatus.IN_REVIEW: {JobStatus.APPROVED, JobStatus.PUBLISHING},
    JobStatus.APPROVED: {JobStatus.APPROVED, JobStatus.PUBLISHING},
    JobStatus.PUBLISHING: {JobStatus.PUBLISHING, *_SETTLED_STATES},
    JobStatus.PUBLISHED: {JobStatus.APPROVED, JobStatus.PUBLISHING},
    JobStatus.PARTIAL: {JobStatus.APPROVED, JobStatus.PUBLISHING},
    JobStatus.FAILED: {JobStatus.APPROVED, JobStatus.PUBLISHING},
}


class JobValidationError(ValueError):
    """Raised when a job or a job mutation violates an invariant.

    ``errors`` lists every violation found, not just the first one.
    """

    def __init__(self, errors: Sequence[str], summary: str = "Job validation failed") -> None:
        self.errors = list(errors)
        message = summary + ":\n  - " + "\n  - ".join(self.errors) if self.errors else summary
        super().__init__(message)


class JobStateError(RuntimeError):
    """Raised on a job status transition the state machine does not allow."""


def generate_job_id() -> str:
    return str(generate_uuid7())


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class PublishResult:
    source_key: str
    ok: bool
    cms_page_id: int | None = None
    link: str | None = None
    status: str | None = None
    action: str | None = None
    error: str | None = None
    attempted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_key": self.source_key,
            "ok": self.ok,
            "cms_page_id": self.cms_page_id,
            "link": self.link,
            "status": self.status,
            "action": self.action,
            "error": self.error,
            "attempted_at": self.attempted_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PublishResult":
        page_id = payload.get("cms_page_id")
        return cls(
            source_key=str(payload.get("source_key") or ""),
            ok=bool(payload.get("ok")),
            cms_page_id=int(page_id) if page_id is not None else None,
            link=payload.get("link"),
            status=payload.get("status"),
            action=payload.get("action"),
            error=payload.get("error"),
            attempted_at=payload.get("attempted_at"),
        )


@dataclass(slots=True)
class Page:
    source_key: str
    title: str
    target_slug: str
    body: PageBody
    meta_title: str | None = None
    meta_description: str | None = None
    blocks: list[ContentBlock] = field(default_factory=list)
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approval_notes: str | None = None
    cms_page_id: int | None = None
    cms_page_exists: bool | None = None
    publish_status: PublishStatus | None = None
    publish_result: PublishResult | None = None

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED

    def content_blocks(self) -> list[ContentBlock]:
        """Blocks to assemble; a page without explicit blocks is one block."""

        if self.blocks:
            return list(self.blocks)
        return [ContentBlock(block_id=self.source_key, body=self.body)]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "source_key": self.source_key,
            "title": self.title,
            "target_slug": self.target_slug,
        }
        payload.update(self.body.to_payload())
        payload.update(
            {
                "meta_title": self.meta_title,
                "meta_description": self.meta_description,
                "content_blocks": [block_to_payload(block) for block in self.blocks],
                "approval_status": self.approval_status.value,
                "approval_notes": self.approval_notes,
                "cms_page_id": self.cms_page_id,
                "cms_page_exists": self.cms_page_exists,
                "publish_status": self.publish_status.value if self.publish_status else None,
                "publish_result": self.publish_result.to_dict() if self.publish_result else None,
            }
        )
        return payload


@dataclass(slots=True)
class RefeedPage:
    source_key: str
    slug: str
    current_body: str
    feedback: str


@dataclass(slots=True)
class RefeedPayload:
    """Structured request-changes snapshot for the downstream revision step."""

    job_id: str
    brand: str
    pages: list[RefeedPage]
    global_feedback: str
    agent_suggestion: str = "web-renderer"
    actor: str | None = None
    requested_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "brand": self.brand,
            "agent_suggestion": self.agent_suggestion,
            "pages": [
                {
                    "source_key": page.source_key,
                    "slug": page.slug,
                    "current_body": page.current_body,
                    "feedback": page.feedback,
                }
                for page in self.pages
            ],
            "global_feedback": self.global_feedback,
            "actor": self.actor,
            "requested_at": self.requested_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RefeedPayload":
        return cls(
            job_id=str(payload.get("job_id") or ""),
            brand=str(payload.get("brand") or ""),
            agent_suggestion=str(payload.get("agent_suggestion") or "web-renderer"),
            pages=[
                RefeedPage(
                    source_key=str(item.get("source_key") or ""),
                    slug=str(item.get("slug") or ""),
                    current_body=str(item.get("current_body") or ""),
                    feedback=str(item.get("feedback") or ""),
                )
                for item in payload.get("pages") or []
            ],
            global_feedback=str(payload.get("global_feedback") or ""),
            actor=payload.get("actor"),
            requested_at=payload.get("requested_at"),
        )


@dataclass(slots=True)
class WebJob:
    job_id: str
    brand: str
    site_key: str
    pages: list[Page]
    job_status: JobStatus = JobStatus.DRAFT
    content_format: ContentFormat = ContentFormat.HTML
    require_all_approved: bool = False
    media_assets: list[MediaAsset] = field(default_factory=list)
    feedback_payload: RefeedPayload | None = None
    publishing_claim_id: str | None = None
    claimed_at: str | None = None
    schema_version: int = SCHEMA_VERSION
    revision: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    def page(self, source_key: str) -> Page:
        for page in self.pages:
            if page.source_key == source_key:
                return page
        raise JobValidationError([f'Page "{source_key}" not found in this job'])

    def approved_pages(self) -> list[Page]:
        return [page for page in self.pages if page.is_approved]

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def transition(self, target: JobStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.job_status, set())
        if target not in allowed:
            raise JobStateError(f"Cannot move job {self.job_id} from {self.job_status.value} to {target.value}")
        if target != self.job_status:
            LOGGER.debug("Job %s: %s -> %s", self.job_id, self.job_status.value, target.value)
        self.job_status = target
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "job_id": self.job_id,
            "revision": self.revision,
            "brand": self.brand,
            "site_key": self.site_key,
            "job_status": self.job_status.value,
            "content_format": self.content_format.value,
            "require_all_approved": self.require_all_approved,
            "pages": [page.to_dict() for page in self.pages],
            "media_assets": [asset_to_payload(asset) for asset in self.media_assets],
            "feedback_payload": self.feedback_payload.to_dict() if self.feedback_payload else None,
            "publishing_claim_id": self.publishing_claim_id,
            "claimed_at": self.claimed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WebJob":
        """Load a stored job record, validating it before returning."""

        errors: list[str] = []
        version = payload.get("schema_version")
        if version != SCHEMA_VERSION:
            errors.append(f"unsupported schema_version {version!r} (expected {SCHEMA_VERSION})")

        for key in ("job_id", "site_key"):
            if not isinstance(payload.get(key), str) or not payload[key]:
                errors.append(f'missing required field "{key}"')

        job_status = _parse_enum(JobStatus, payload.get("job_status"), "job_status", errors)
        content_format = parse_content_format(payload.get("content_format"))

        pages: list[Page] = []
        raw_pages = payload.get("pages")
        if not isinstance(raw_pages, list) or not raw_pages:
            errors.append('"pages" must be a non-empty list')
            raw_pages = []
        for index, raw_page in enumerate(raw_pages):
            if not isinstance(raw_page, Mapping):
                errors.append(f"pages[{index}] must be an object")
                continue
            page = _page_from_dict(raw_page, index, content_format, errors)
            if page is not None:
                pages.append(page)

        errors.extend(_duplicate_messages(pages, "source_key"))
        errors.extend(find_duplicate_slugs(pages))

        if errors:
            raise JobValidationError(errors, "Invalid stored job")

        feedback = payload.get("feedback_payload")
        return cls(
            job_id=str(payload["job_id"]),
            brand=str(payload.get("brand") or ""),
            site_key=str(payload["site_key"]),
            pages=pages,
            job_status=job_status or JobStatus.DRAFT,
            content_format=content_format,
            require_all_approved=bool(payload.get("require_all_approved", False)),
            media_assets=[
                asset_from_payload(item)
                for item in payload.get("media_assets") or []
                if isinstance(item, Mapping)
            ],
            feedback_payload=RefeedPayload.from_dict(feedback) if isinstance(feedback, Mapping) else None,
            publishing_claim_id=payload.get("publishing_claim_id"),
            claimed_at=payload.get("claimed_at"),
            schema_version=SCHEMA_VERSION,
            revision=int(payload.get("revision") or 0),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )


def _parse_enum(enum_cls, value: Any, label: str, errors: list[str]):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        errors.append(f"{label} {value!r} must be one of: {allowed}")
        return None


def _page_from_dict(
    raw: Mapping[str, Any],
    index: int,
    declared: ContentFormat,
    errors: list[str],
) -> Page | None:
    label = f"pages[{index}]"
    source_key = raw.get("source_key")
    target_slug = raw.get("target_slug")
    if not isinstance(source_key, str) or not source_key:
        errors.append(f'{label} is missing required field "source_key"')
        return None
    if not isinstance(target_slug, str) or not target_slug:
        errors.append(f'{label} is missing required field "target_slug"')
        return None

    body_html = raw.get("body_html")
    body_markdown = raw.get("body_markdown")
    if body_html is not None and body_markdown is not None:
        errors.append(f"{label} has both body_html and body_markdown")

    approval = _parse_enum(ApprovalStatus, raw.get("approval_status", "pending"), f"{label}.approval_status", errors)
    publish_status = _parse_enum(PublishStatus, raw.get("publish_status"), f"{label}.publish_status", errors)
    result_payload = raw.get("publish_result")
    page_id = raw.get("cms_page_id")
    exists = raw.get("cms_page_exists")

    return Page(
        source_key=source_key,
        title=str(raw.get("title") or source_key),
        target_slug=target_slug,
        body=PageBody.from_fields(body_html, body_markdown, declared),
        meta_title=raw.get("meta_title"),
        meta_description=raw.get("meta_description"),
        blocks=[
            block_from_payload(item, index=position, declared=declared)
            for position, item in enumerate(raw.get("content_blocks") or [])
            if isinstance(item, Mapping)
        ],
        approval_status=approval or ApprovalStatus.PENDING,
        approval_notes=raw.get("approval_notes"),
        cms_page_id=int(page_id) if page_id is not None else None,
        cms_page_exists=bool(exists) if exists is not None else None,
        publish_status=publish_status,
        publish_result=PublishResult.from_dict(result_payload) if isinstance(result_payload, Mapping) else None,
    )


def _duplicate_messages(pages: Iterable[Page], attribute: str) -> list[str]:
    seen: dict[str, str] = {}
    messages: list[str] = []
    for page in pages:
        value = getattr(page, attribute)
        if value in seen:
            messages.append(f'Duplicate {attribute} "{value}" used by "{seen[value]}" and "{page.source_key}".')
        else:
            seen[value] = page.source_key
    return messages


def find_duplicate_slugs(pages: Iterable[Page]) -> list[str]:
    """Return one message per duplicated target slug; empty when all are unique."""

    seen: dict[str, str] = {}
    messages: list[str] = []
    for page in pages:
        existing = seen.get(page.target_slug)
        if existing is not None:
            messages.append(
                f'Duplicate target slug "{page.target_slug}" used by "{existing}" and "{page.source_key}".'
            )
        else:
            seen[page.target_slug] = page.source_key
    return messages


def ensure_unique_slugs(pages: Iterable[Page]) -> None:
    errors = find_duplicate_slugs(pages)
    if errors:
        raise JobValidationError(errors, "Duplicate target slugs")


def build_job(normalized: NormalizedOutput, *, brand: str | None, site_key: str) -> WebJob:
    if normalized.is_empty:
        raise RendererFormatError("Could not parse any pages from the renderer output. Check the format.")
    now = utcnow_iso()
    pages = [
        Page(
            source_key=item.source_key,
            title=item.title,
            target_slug=item.source_key,
            body=item.body,
            meta_title=item.meta_title,
            meta_description=item.meta_description,
            blocks=list(item.blocks),
        )
        for item in normalized.pages
    ]
    ensure_unique_slugs(pages)
    return WebJob(
        job_id=generate_job_id(),
        brand=brand or normalized.brand,
        site_key=site_key,
        pages=pages,
        content_format=normalized.content_format,
        media_assets=list(normalized.media_assets),
        created_at=now,
        updated_at=now,
    )


def create_job(renderer_output: str | Mapping[str, Any], brand: str | None, site_key: str) -> WebJob:
    """Create a DRAFT job from raw renderer output.

    Raises ``RendererFormatError`` when no page can be parsed and
    ``JobValidationError`` when two pages share a target slug.
    """

    if not site_key or not site_key.strip():
        raise JobValidationError(['"site_key" is required'])
    job = build_job(normalize_renderer_output(renderer_output), brand=brand, site_key=site_key.strip())
    LOGGER.info("Created job %s with %d pages for site %s", job.job_id, len(job.pages), job.site_key)
    return job


def patch_job(
    job: WebJob,
    *,
    slug_overrides: Mapping[str, str] | None = None,
    site_key: str | None = None,
    require_all_approved: bool | None = None,
) -> WebJob:
    """Apply operator edits; nothing is applied if any check fails."""

    errors: list[str] = []
    proposed: dict[str, str] = {}
    known_keys = {page.source_key for page in job.pages}
    for source_key, slug in (slug_overrides or {}).items():
        if source_key not in known_keys:
            errors.append(f'Page "{source_key}" not found in this job')
            continue
        cleaned = slug.strip() if isinstance(slug, str) else ""
        if not cleaned:
            errors.append(f'Target slug for "{source_key}" must not be empty')
            continue
        proposed[source_key] = cleaned

    if site_key is not None and not site_key.strip():
        errors.append('"site_key" must not be empty')

    seen: dict[str, str] = {}
    for page in job.pages:
        slug = proposed.get(page.source_key, page.target_slug)
        if slug in seen:
            errors.append(f'Duplicate target slug "{slug}" used by "{seen[slug]}" and "{page.source_key}".')
        else:
            seen[slug] = page.source_key

    if errors:
        raise JobValidationError(errors, "Patch rejected")

    for page in job.pages:
        new_slug = proposed.get(page.source_key)
        if new_slug is not None and new_slug != page.target_slug:
            page.target_slug = new_slug
            page.cms_page_id = None
            page.cms_page_exists = None
    if site_key is not None:
        job.site_key = site_key.strip()
    if require_all_approved is not None:
        job.require_all_approved = bool(require_all_approved)
    job.touch()
    return job


def patch_slugs(job: WebJob, overrides: Mapping[str, str]) -> WebJob:
    return patch_job(job, slug_overrides=overrides)


def approve_all(job: WebJob) -> WebJob:
    """Bulk approval override; does not require a prior review pass."""

    if job.job_status == JobStatus.PUBLISHING:
        raise JobStateError(f"Job {job.job_id} is publishing; wait for the batch to finish")
    for page in job.pages:
        page.approval_status = ApprovalStatus.APPROVED
    job.transition(JobStatus.APPROVED)
    return job


def set_page_approval(
    job: WebJob,
    source_key: str,
    decision: ApprovalStatus | str,
    notes: str | None = None,
) -> Page:
    try:
        status = ApprovalStatus(decision)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in ApprovalStatus)
        raise JobValidationError([f"decision must be one of: {allowed}"]) from exc
    page = job.page(source_key)
    page.approval_status = status
    page.approval_notes = notes or None
    job.touch()
    return page


def request_changes(
    job: WebJob,
    feedback: str,
    page_key: str | None = None,
    *,
    actor: str | None = None,
) -> RefeedPayload:
    """Record a refeed payload for the revision step; statuses are untouched."""

    if not isinstance(feedback, str) or not feedback.strip():
        raise JobValidationError(["feedback is required"])
    pages = [job.page(page_key)] if page_key else list(job.pages)
    payload = RefeedPayload(
        job_id=job.job_id,
        brand=job.brand,
        pages=[
            RefeedPage(
                source_key=page.source_key,
                slug=page.target_slug,
                current_body=page.body.text,
                feedback=feedback,
            )
            for page in pages
        ],
        global_feedback=feedback,
        actor=actor,
        requested_at=utcnow_iso(),
    )
    job.feedback_payload = payload
    job.touch()
    return payload


def compute_rollup(job: WebJob) -> JobStatus:
    """PUBLISHED iff every approved page is ok, FAILED iff none is, else PARTIAL."""

    approved = job.approved_pages()
    ok_count = sum(1 for page in approved if page.publish_status == PublishStatus.OK)
    if approved and ok_count == len(approved):
        return JobStatus.PUBLISHED
    if ok_count == 0:
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def _claim_expired(job: WebJob, stale_after: float | None) -> bool:
    if stale_after is None or not job.claimed_at:
        return False
    try:
        claimed = datetime.fromisoformat(job.claimed_at.replace("Z", "+00:00"))
    except ValueError:
        return False
    if claimed.tzinfo is None:
        claimed = claimed.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - claimed).total_seconds() > stale_after


def claim_publishing(job: WebJob, *, resume: bool = False, stale_after: float | None = None) -> str:
    """Move ``job`` to PUBLISHING under a fresh claim id and return it.

    A job that is already PUBLISHING belongs to another batch. It is only
    taken over with ``resume`` or once its claim is older than
    ``stale_after`` seconds.
    """

    if job.job_status == JobStatus.PUBLISHING and not resume and not _claim_expired(job, stale_after):
        raise JobStateError(
            f"Job {job.job_id} is already being published "
            f"(claim {job.publishing_claim_id or 'unknown'} since {job.claimed_at or 'unknown'})"
        )
    job.transition(JobStatus.PUBLISHING)
    job.publishing_claim_id = generate_job_id()
    job.claimed_at = job.updated_at
    return job.publishing_claim_id


def apply_publish_results(job: WebJob, results: Iterable[PublishResult]) -> JobStatus:
    """Write per-page results back and settle the job status."""

    by_key = {result.source_key: result for result in results}
    for page in job.pages:
        result = by_key.get(page.source_key)
        if result is None:
            continue
        if result.cms_page_id is not None:
            page.cms_page_id = result.cms_page_id
            page.cms_page_exists = True
        page.publish_status = PublishStatus.OK if result.ok else PublishStatus.FAILED
        page.publish_result = result
    status = compute_rollup(job)
    job.transition(status)
    job.publishing_claim_id = None
    job.claimed_at = None
    return status


__all__ = [
    "ApprovalStatus",
    "JobStateError",
    "JobStatus",
    "JobValidationError",
    "Page",
    "PublishResult",
    "PublishStatus",
    "RefeedPayload",
    "WebJob",
    "apply_publish_results",
    "approve_all",
    "claim_publishing",
    "compute_rollup",
    "create_job",
    "ensure_unique_slugs",
    "find_duplicate_slugs",
    "patch_job",
    "patch_slugs",
    "request_changes",
    "set_page_approval",
]
