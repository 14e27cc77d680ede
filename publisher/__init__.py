"""Review and publish pipeline for multi-page website jobs."""

from .batch import PublishOptions, PublishReport, publish
from .jobs import WebJob, approve_all, create_job, patch_slugs, request_changes

__all__ = [
    "PublishOptions",
    "PublishReport",
    "WebJob",
    "approve_all",
    "create_job",
    "patch_slugs",
    "publish",
    "request_changes",
]
