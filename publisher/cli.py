"""Command-line entrypoint for the website publish pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .batch import NothingToPublishError
from .config import DEFAULT_LOG_DIR, ConfigurationError, PublishConfig, TimeoutConfig
from .jobs import ApprovalStatus, JobStateError, JobStatus, JobValidationError
from .media import MediaValidationError, UnknownMediaSourceError
from .normalizer import RendererFormatError
from .service import PublishingService
from .store import JobPersistenceError, JobRepository

LOGGER = logging.getLogger(__name__)

DATABASE_URL_ENV = "PUBLISHER_DATABASE_URL"

_INPUT_ERRORS = (
    ConfigurationError,
    JobStateError,
    JobValidationError,
    MediaValidationError,
    NothingToPublishError,
    RendererFormatError,
    UnknownMediaSourceError,
)


def _slug_override(value: str) -> tuple[str, str]:
    key, separator, slug = value.partition("=")
    if not separator or not key.strip() or not slug.strip():
        raise argparse.ArgumentTypeError(f"Expected SOURCE_KEY=SLUG, got {value!r}")
    return key.strip(), slug.strip()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Review and publish multi-page website jobs to WordPress")
    parser.add_argument(
        "--db-url",
        type=str,
        default=os.getenv(DATABASE_URL_ENV),
        help=f"SQLAlchemy database URL (default: ${DATABASE_URL_ENV})",
    )
    parser.add_argument("--log-dir", type=Path, default=DEFAULT_LOG_DIR, help="Directory for the publish audit log")
    parser.add_argument("--request-timeout", type=float, default=TimeoutConfig().request_timeout, help="CMS request timeout in seconds")
    parser.add_argument("--media-timeout", type=float, default=TimeoutConfig().media_timeout, help="Media download/upload timeout in seconds")
    parser.add_argument("--staging-only", action="store_true", help="Refuse to publish to a site URL without 'staging' in it")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create-job", help="Create a job from renderer output")
    create.add_argument("--input", type=str, default="-", help="Renderer output file, or '-' for stdin")
    create.add_argument("--brand", type=str, help="Brand name (defaults to the one in the renderer output)")
    create.add_argument("--site-key", type=str, required=True, help="Target site key, e.g. llif-staging")

    show = subparsers.add_parser("show", help="Print a stored job")
    show.add_argument("job_id")

    patch = subparsers.add_parser("patch-slugs", help="Override target slugs and job settings")
    patch.add_argument("job_id")
    patch.add_argument(
        "--slug",
        dest="slugs",
        action="append",
        type=_slug_override,
        default=[],
        metavar="SOURCE_KEY=SLUG",
        help="Target slug override; repeatable",
    )
    patch.add_argument("--site-key", type=str, help="Move the job to another site")
    patch.add_argument(
        "--require-all-approved",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Refuse to publish until every page is approved",
    )

    approve = subparsers.add_parser("approve-all", help="Approve every page of a job")
    approve.add_argument("job_id")

    page_approval = subparsers.add_parser("set-approval", help="Approve or reject one page")
    page_approval.add_argument("job_id")
    page_approval.add_argument("source_key")
    page_approval.add_argument("decision", choices=[status.value for status in ApprovalStatus])
    page_approval.add_argument("--notes", type=str, help="Reviewer notes")

    validate = subparsers.add_parser("validate-slugs", help="Look up every target slug on the CMS")
    validate.add_argument("job_id")

    publish = subparsers.add_parser("publish", help="Publish approved pages")
    publish.add_argument("job_id")
    publish.add_argument("--dry-run", action="store_true", help="Report planned actions without writing")
    publish.add_argument("--retry-failed", action="store_true", help="Only retry approved pages whose last publish failed")
    publish.add_argument("--resume", action="store_true", help="Take over a job left PUBLISHING by an interrupted run")
    publish.add_argument("--update-title", action="store_true", default=None, help="Also overwrite the remote page title")
    publish.add_argument("--page-status", type=str, choices=["draft", "publish", "pending", "private"], help="Remote page status to write")
    publish.add_argument(
        "--create-missing-pages",
        action="store_true",
        default=None,
        help="Create remote pages whose slug has no match instead of failing them",
    )

    changes = subparsers.add_parser("request-changes", help="Record reviewer feedback for another render pass")
    changes.add_argument("job_id")
    changes.add_argument("--feedback", type=str, required=True, help="Feedback for the renderer")
    changes.add_argument("--page", type=str, help="Limit the request to one page source key")
    changes.add_argument("--actor", type=str, help="Reviewer identity")

    return parser


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace) -> PublishConfig:
    if args.request_timeout <= 0 or args.media_timeout <= 0:
        raise ValueError("timeouts must be positive")
    return PublishConfig(
        log_dir=args.log_dir,
        staging_only=args.staging_only,
        timeout=TimeoutConfig(request_timeout=args.request_timeout, media_timeout=args.media_timeout),
    )


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _dispatch(service: PublishingService, args: argparse.Namespace) -> int:
    if args.command == "create-job":
        job = service.create_job(_read_input(args.input), args.brand, args.site_key)
        _emit(job.to_dict())
        return 0
    if args.command == "show":
        _emit(service.get_job(args.job_id).to_dict())
        return 0
    if args.command == "patch-slugs":
        job = service.patch_job(
            args.job_id,
            slug_overrides=dict(args.slugs),
            site_key=args.site_key,
            require_all_approved=args.require_all_approved,
        )
        _emit(job.to_dict())
        return 0
    if args.command == "approve-all":
        _emit(service.approve_all(args.job_id).to_dict())
        return 0
    if args.command == "set-approval":
        page = service.set_page_approval(args.job_id, args.source_key, args.decision, args.notes)
        _emit(page.to_dict())
        return 0
    if args.command == "validate-slugs":
        validation = service.validate_slugs(args.job_id)
        _emit(
            {
                "job_status": validation.job.job_status.value,
                "lookups": [
                    {
                        "source_key": lookup.source_key,
                        "target_slug": lookup.target_slug,
                        "exists": lookup.exists,
                        "cms_page_id": lookup.cms_page_id,
                        "error": lookup.error,
                    }
                    for lookup in validation.lookups
                ],
            }
        )
        return 0
    if args.command == "publish":
        report = service.publish(
            args.job_id,
            dry_run=args.dry_run,
            retry_failed=args.retry_failed,
            update_title=args.update_title,
            page_status=args.page_status,
            create_missing_pages=args.create_missing_pages,
            resume=args.resume,
        )
        _emit(report.to_dict())
        return 0 if report.dry_run or report.job_status == JobStatus.PUBLISHED else 1
    if args.command == "request-changes":
        payload = service.request_changes(args.job_id, args.feedback, args.page, actor=args.actor)
        _emit(payload.to_dict())
        return 0
    raise ValueError(f"Unknown command {args.command!r}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.db_url:
        parser.error(f"--db-url is required (or set {DATABASE_URL_ENV})")

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    engine = create_engine(args.db_url)
    Base.metadata.create_all(engine)  # ensure required tables exist before queries
    SessionLocal = sessionmaker(bind=engine)
    service = PublishingService(JobRepository(SessionLocal), config)

    try:
        return _dispatch(service, args)
    except _INPUT_ERRORS as exc:
        parser.error(str(exc))
    except OSError as exc:
        parser.error(f"Cannot read input: {exc}")
    except JobPersistenceError as exc:
        LOGGER.error("Persistence error: %s", exc)
        return 1
    finally:
        engine.dispose()
    return 1


__all__ = ["build_arg_parser", "build_config", "configure_logging", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
