import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base
from publisher.config import ConfigurationError, PublishConfig
from publisher.jobs import JobStateError, JobStatus, claim_publishing
from publisher.service import PublishingService
from publisher.store import ConcurrentModificationError, JobRepository

from wp_fake import FakeWordPress

ENVIRON = {
    "WP_LLIF_STAGING_URL": "https://site.test",
    "WP_LLIF_STAGING_USER": "editor",
    "WP_LLIF_STAGING_APP_PASSWORD": "secret",
}

RENDERER_OUTPUT = json.dumps(
    {
        "brand": "LLIF",
        "pages": [
            {"slug": "home", "title": "Home", "body_html": "<p>Home</p>"},
            {"slug": "about", "title": "About", "body_markdown": "## About\n\nWe care."},
        ],
    }
)


class PublishingServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.repository = JobRepository(sessionmaker(bind=engine))
        self.tmpdir = TemporaryDirectory()
        self.config = PublishConfig(log_dir=Path(self.tmpdir.name) / "logs")
        self.wordpress = FakeWordPress(pages={"home": 1, "about": 2})
        self.factory_calls = []

        def client_factory(credentials, config):
            self.factory_calls.append(credentials)
            return self.wordpress.client(config)

        self.service = PublishingService(
            self.repository,
            self.config,
            environ=ENVIRON,
            client_factory=client_factory,
        )

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_review_and_publish_flow(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, None, "llif-staging")

        validation = self.service.validate_slugs(job.job_id)
        self.assertEqual(validation.job.job_status, JobStatus.IN_REVIEW)

        self.service.set_page_approval(job.job_id, "home", "approved")
        self.service.set_page_approval(job.job_id, "about", "approved", "Looks good")
        report = self.service.publish(job.job_id)

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)
        stored = self.service.get_job(job.job_id)
        self.assertEqual(stored.job_status, JobStatus.PUBLISHED)
        self.assertEqual(stored.pages[1].publish_result.link, "https://site.test/about/")
        self.assertIn("<h2>About</h2>", self.wordpress.page_bodies[2]["content"])
        self.assertEqual(len(self.repository.list_publish_logs(job.job_id)), 1)
        audit_lines = self.config.audit_log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(json.loads(audit_lines[0])["job_status"], "PUBLISHED")
        self.assertEqual(self.factory_calls[0].base_url, "https://site.test")

    def test_missing_credentials_leave_job_untouched(self) -> None:
        service = PublishingService(self.repository, self.config, environ={})
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        before = self.service.get_job(job.job_id)

        with self.assertRaises(ConfigurationError):
            service.publish(job.job_id)

        after = self.service.get_job(job.job_id)
        self.assertEqual(after.to_dict(), before.to_dict())
        self.assertEqual(self.wordpress.requests, [])

    def test_dry_run_does_not_save(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        revision = self.service.get_job(job.job_id).revision

        report = self.service.publish(job.job_id, dry_run=True)

        self.assertTrue(report.dry_run)
        self.assertEqual(self.service.get_job(job.job_id).revision, revision)
        self.assertEqual(self.wordpress.mutating_requests(), [])

    def test_concurrent_publish_claim_is_rejected(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        original_load = self.repository.load
        stale = original_load(job.job_id)

        def load_then_race(job_id):
            loaded = original_load(job_id)
            self.repository.save(stale)
            return loaded

        self.repository.load = load_then_race

        with self.assertRaises(ConcurrentModificationError):
            self.service.publish(job.job_id)
        self.assertEqual(self.wordpress.mutating_requests(), [])

    def test_publish_after_another_claim_is_refused(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        claimed = self.repository.load(job.job_id)
        claim_publishing(claimed)
        self.repository.save(claimed)

        with self.assertRaises(JobStateError):
            self.service.publish(job.job_id)

        self.assertEqual(self.wordpress.mutating_requests(), [])
        stored = self.service.get_job(job.job_id)
        self.assertEqual(stored.job_status, JobStatus.PUBLISHING)
        self.assertEqual(stored.publishing_claim_id, claimed.publishing_claim_id)

    def test_resume_takes_over_claimed_job(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        claimed = self.repository.load(job.job_id)
        claim_publishing(claimed)
        self.repository.save(claimed)

        report = self.service.publish(job.job_id, resume=True)

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)
        stored = self.service.get_job(job.job_id)
        self.assertIsNone(stored.publishing_claim_id)
        self.assertIsNone(stored.claimed_at)

    def test_stale_claim_is_taken_over(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")
        self.service.approve_all(job.job_id)
        claimed = self.repository.load(job.job_id)
        claim_publishing(claimed)
        claimed.claimed_at = "2020-01-01T00:00:00Z"
        self.repository.save(claimed)

        report = self.service.publish(job.job_id)

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)

    def test_patch_and_request_changes(self) -> None:
        job = self.service.create_job(RENDERER_OUTPUT, "LLIF", "llif-staging")

        patched = self.service.patch_job(job.job_id, slug_overrides={"about": "about-us"})
        payload = self.service.request_changes(job.job_id, "Warmer tone", page_key="home")

        self.assertEqual(patched.pages[1].target_slug, "about-us")
        stored = self.service.get_job(job.job_id)
        self.assertEqual(stored.feedback_payload.to_dict(), payload.to_dict())
        self.assertEqual(stored.revision, 3)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
