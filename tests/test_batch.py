import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from publisher.audit import NdjsonAuditLog
from publisher.batch import NothingToPublishError, PublishOptions, publish
from publisher.jobs import ApprovalStatus, JobStateError, JobStatus, PublishStatus, approve_all, create_job
from publisher.media import MediaResolver, MediaValidationError

from wp_fake import FakeWordPress


def _renderer_output() -> dict:
    return {
        "brand": "LLIF",
        "pages": [
            {
                "slug": "p1",
                "title": "Page One",
                "content_blocks": [
                    {
                        "block_id": "intro",
                        "markdown": "Welcome to **LLIF**.\n\nSecond paragraph.",
                        "media_bindings": [{"asset_id": "hero", "placement": "inline", "alignment": "wide"}],
                    }
                ],
            },
            {
                "slug": "p2",
                "title": "Page Two",
                "content_blocks": [
                    {
                        "block_id": "body",
                        "html": "<p>Two</p>",
                        "media_bindings": [{"asset_id": "hero", "placement": "above"}],
                    }
                ],
            },
            {"slug": "p3", "title": "Page Three", "body_html": "<p>Three</p>"},
        ],
        "media_assets": [
            {
                "asset_id": "hero",
                "source": "url",
                "url": "https://images.test/hero.jpg",
                "intent": "hero",
                "seo": {"alt": "Clinic front", "filename_slug": "clinic-front"},
                "geo": {"llm_description": "Front entrance of the clinic"},
            }
        ],
    }


class BatchPublishTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.wordpress = FakeWordPress(pages={"p1": 101, "p2": 102, "p3": 103})
        self.wordpress.add_download("https://images.test/hero.jpg", content_type="image/jpeg")
        self.client = self.wordpress.client()
        self.http = self.wordpress.http_client()
        self.job = create_job(_renderer_output(), None, "llif-staging")

    def tearDown(self) -> None:
        self.http.close()
        self.client.close()

    def _publish(self, options: PublishOptions | None = None, audit_log=None):
        resolver = MediaResolver(self.client, http_client=self.http)
        return publish(self.job, self.client, options, audit_log, resolver=resolver)

    def test_all_pages_published(self) -> None:
        approve_all(self.job)

        report = self._publish()

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)
        self.assertEqual(self.job.job_status, JobStatus.PUBLISHED)
        self.assertEqual(len(self.wordpress.uploads), 1)
        self.assertEqual(self.wordpress.uploads[0]["filename"], "clinic-front.jpg")
        p1_body = self.wordpress.page_bodies[101]
        self.assertNotIn("title", p1_body)
        self.assertEqual(p1_body["status"], "draft")
        self.assertIn("<p>Welcome to <strong>LLIF</strong>.</p>\n<figure", p1_body["content"])
        self.assertIn("site-media--wide", p1_body["content"])
        self.assertTrue(self.wordpress.page_bodies[102]["content"].startswith("<figure"))

    def test_only_approved_pages_are_published(self) -> None:
        approve_all(self.job)
        self.job.pages[2].approval_status = ApprovalStatus.REJECTED

        report = self._publish()

        self.assertEqual([result.source_key for result in report.results], ["p1", "p2"])
        self.assertNotIn(103, self.wordpress.page_bodies)
        self.assertEqual(report.job_status, JobStatus.PUBLISHED)

    def test_failure_is_isolated_and_retry_touches_only_failed(self) -> None:
        approve_all(self.job)
        self.job.pages[2].approval_status = ApprovalStatus.REJECTED
        self.wordpress.failing_page_ids.add(102)

        report = self._publish()

        self.assertEqual(report.job_status, JobStatus.PARTIAL)
        p1, p2 = self.job.pages[0], self.job.pages[1]
        self.assertEqual(p1.publish_status, PublishStatus.OK)
        self.assertEqual(p1.publish_result.link, "https://site.test/p1/")
        self.assertEqual(p2.publish_status, PublishStatus.FAILED)
        self.assertEqual(p2.publish_result.error, "Page update failed (HTTP 500): Page write exploded")
        p1_result = p1.publish_result

        self.wordpress.failing_page_ids.clear()
        self.wordpress.requests.clear()
        retry = self._publish(PublishOptions(retry_failed=True))

        self.assertEqual([result.source_key for result in retry.results], ["p2"])
        self.assertEqual(retry.job_status, JobStatus.PUBLISHED)
        self.assertIs(p1.publish_result, p1_result)
        written = [url for method, url in self.wordpress.mutating_requests() if "/pages/" in url]
        self.assertEqual(written, ["https://site.test/wp-json/wp/v2/pages/102"])

    def test_all_failed_rolls_up_to_failed(self) -> None:
        approve_all(self.job)
        self.wordpress.failing_page_ids.update({101, 102, 103})

        report = self._publish()

        self.assertEqual(report.job_status, JobStatus.FAILED)

    def test_missing_remote_page_fails_only_that_page(self) -> None:
        del self.wordpress.pages_by_slug["p3"]
        approve_all(self.job)

        report = self._publish()

        self.assertEqual(report.job_status, JobStatus.PARTIAL)
        self.assertEqual(report.results[2].error, 'No CMS page found with slug "p3"')

    def test_create_missing_pages_is_opt_in(self) -> None:
        del self.wordpress.pages_by_slug["p3"]
        approve_all(self.job)

        report = self._publish(PublishOptions(create_missing_pages=True))

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)
        self.assertEqual(report.results[2].action, "create")
        self.assertEqual(self.job.pages[2].cms_page_id, report.results[2].cms_page_id)

    def test_update_title_is_explicit(self) -> None:
        approve_all(self.job)

        self._publish(PublishOptions(update_title=True, page_status="publish"))

        self.assertEqual(self.wordpress.page_bodies[103]["title"], "Page Three")
        self.assertEqual(self.wordpress.page_bodies[103]["status"], "publish")

    def test_dry_run_issues_only_reads(self) -> None:
        approve_all(self.job)
        self.job.pages[0].cms_page_id = 101
        del self.wordpress.pages_by_slug["p3"]
        before = self.job.to_dict()

        report = self._publish(PublishOptions(dry_run=True))

        self.assertTrue(report.dry_run)
        self.assertEqual(self.wordpress.mutating_requests(), [])
        self.assertEqual(self.job.to_dict(), before)
        self.assertEqual([entry["action"] for entry in report.plan], ["update", "update", "create"])
        self.assertEqual(report.plan[0]["media_assets"], ["hero"])
        lookups = [url for method, url in self.wordpress.requests if "slug=" in url]
        self.assertEqual(len(lookups), 2)

    def test_empty_selection_is_an_input_error(self) -> None:
        with self.assertRaises(NothingToPublishError):
            self._publish()

        approve_all(self.job)
        with self.assertRaises(NothingToPublishError):
            self._publish(PublishOptions(retry_failed=True))
        self.assertEqual(self.wordpress.requests, [])

    def test_require_all_approved_blocks_partial_approval(self) -> None:
        approve_all(self.job)
        self.job.require_all_approved = True
        self.job.pages[1].approval_status = ApprovalStatus.PENDING

        with self.assertRaises(JobStateError):
            self._publish()

    def test_invalid_bindings_fail_before_any_request(self) -> None:
        approve_all(self.job)
        self.job.media_assets[0].seo.alt = ""

        with self.assertRaises(MediaValidationError):
            self._publish()

        self.assertEqual(self.wordpress.requests, [])
        self.assertEqual(self.job.job_status, JobStatus.APPROVED)

    def test_audit_entry_is_appended(self) -> None:
        approve_all(self.job)
        self.wordpress.failing_page_ids.add(103)

        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "logs" / "publish.ndjson"
            self._publish(audit_log=NdjsonAuditLog(path))
            lines = path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(len(lines), 1)
        entry = json.loads(lines[0])
        self.assertEqual(entry["job_id"], self.job.job_id)
        self.assertEqual(entry["site_key"], "llif-staging")
        self.assertEqual(entry["job_status"], "PARTIAL")
        self.assertEqual((entry["pages_ok"], entry["pages_failed"]), (2, 1))
        self.assertEqual(len(entry["results"]), 3)

    def test_audit_write_failure_does_not_fail_publish(self) -> None:
        approve_all(self.job)

        with TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "not-a-dir"
            blocker.write_text("x", encoding="utf-8")
            with self.assertLogs("publisher.audit", level="WARNING"):
                report = self._publish(audit_log=NdjsonAuditLog(blocker / "publish.ndjson"))

        self.assertEqual(report.job_status, JobStatus.PUBLISHED)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
