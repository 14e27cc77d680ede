"""Slug lookups against the CMS."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .cms_client import CmsApiError, CmsClient
from .jobs import JobStatus, Page, WebJob, ensure_unique_slugs

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SlugLookup:
    source_key: str
    target_slug: str
    exists: bool = False
    cms_page_id: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def lookup_slugs(pages: Iterable[Page], client: CmsClient) -> list[SlugLookup]:
    """Look up every page's target slug; failures are carried, not raised."""

    lookups: list[SlugLookup] = []
    for page in pages:
        try:
            page_id = client.find_page_id_by_slug(page.target_slug)
        except CmsApiError as exc:
            LOGGER.warning("Slug lookup failed for %s (%s): %s", page.source_key, page.target_slug, exc)
            lookups.append(SlugLookup(source_key=page.source_key, target_slug=page.target_slug, error=str(exc)))
            continue
        lookups.append(
            SlugLookup(
                source_key=page.source_key,
                target_slug=page.target_slug,
                exists=page_id is not None,
                cms_page_id=page_id,
            )
        )
    return lookups


def apply_slug_lookups(job: WebJob, lookups: Iterable[SlugLookup]) -> None:
    for lookup in lookups:
        if not lookup.ok:
            continue
        page = job.page(lookup.source_key)
        if page.target_slug != lookup.target_slug:
            continue
        page.cms_page_id = lookup.cms_page_id
        page.cms_page_exists = lookup.exists


def validate_slugs(job: WebJob, client: CmsClient) -> list[SlugLookup]:
    """Check uniqueness, record remote ids and move a draft job into review."""

    ensure_unique_slugs(job.pages)
    lookups = lookup_slugs(job.pages, client)
    apply_slug_lookups(job, lookups)
    if job.job_status == JobStatus.DRAFT:
        job.transition(JobStatus.IN_REVIEW)
    else:
        job.touch()
    found = sum(1 for lookup in lookups if lookup.exists)
    failed = sum(1 for lookup in lookups if not lookup.ok)
    LOGGER.info(
        "Validated %d slugs for job %s: %d existing, %d lookup failures",
        len(lookups),
        job.job_id,
        found,
        failed,
    )
    return lookups


__all__ = ["SlugLookup", "apply_slug_lookups", "lookup_slugs", "validate_slugs"]
