import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from publisher.content import ContentBlock, GeoMetadata, MediaAsset, MediaBinding, PageBody, SeoMetadata
from publisher.formats import ContentFormat
from publisher.media import (
    MediaResolutionError,
    MediaResolver,
    MediaValidationError,
    UnknownMediaSourceError,
    validate_media_bindings,
)

from wp_fake import PNG_BYTES, FakeWordPress


def _asset(asset_id: str, source: str = "url", **overrides) -> MediaAsset:
    values = {
        "asset_id": asset_id,
        "source": source,
        "url": f"https://images.test/{asset_id}.png" if source == "url" else None,
        "seo": SeoMetadata(alt=f"{asset_id} alt", filename_slug=f"{asset_id}-file", caption="Caption"),
        "geo": GeoMetadata(llm_description=f"Photo of {asset_id}"),
    }
    values.update(overrides)
    return MediaAsset(**values)


def _block(*asset_ids: str, placement: str = "below") -> ContentBlock:
    return ContentBlock(
        block_id="b1",
        body=PageBody(ContentFormat.HTML, "<p>x</p>"),
        media_bindings=[MediaBinding(asset_id, placement) for asset_id in asset_ids],
    )


class ValidateMediaBindingsTestCase(unittest.TestCase):
    def test_valid_bindings_pass(self) -> None:
        validate_media_bindings([_asset("a")], [_block("a")])

    def test_reports_every_defect_at_once(self) -> None:
        missing_alt = _asset("a", seo=SeoMetadata(alt="", filename_slug="a-file"))
        missing_geo = _asset("b", geo=GeoMetadata(llm_description=""))
        missing_slug = _asset("c", seo=SeoMetadata(alt="A clinic", filename_slug=""))
        blocks = [_block("a", "b", "c"), _block("ghost", placement="sideways")]

        with self.assertRaises(MediaValidationError) as ctx:
            validate_media_bindings([missing_alt, missing_geo, missing_slug], blocks)

        errors = ctx.exception.errors
        self.assertEqual(len(errors), 5)
        self.assertTrue(any("seo.alt" in error for error in errors))
        self.assertIn('Asset "c" is missing seo.filename_slug', errors)
        self.assertTrue(any("geo.llm_description" in error for error in errors))
        self.assertTrue(any('unknown asset "ghost"' in error for error in errors))
        self.assertTrue(any('invalid placement "sideways"' in error for error in errors))
        self.assertTrue(str(ctx.exception).startswith("Media binding validation failed:"))

    def test_unknown_source_and_missing_provenance(self) -> None:
        assets = [_asset("a", source="ftp"), _asset("b", source="cms"), _asset("c", source="upload")]

        with self.assertRaises(MediaValidationError) as ctx:
            validate_media_bindings(assets, [_block("a", "b", "c")])

        self.assertEqual(
            ctx.exception.errors,
            [
                'Asset "a" has unknown source "ftp"',
                'Asset "b" (cms) is missing cms_media_id',
                'Asset "c" (upload) is missing upload_path',
            ],
        )


class MediaResolverTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.wordpress = FakeWordPress()
        self.cms = self.wordpress.client()
        self.http = self.wordpress.http_client()
        self.resolver = MediaResolver(self.cms, http_client=self.http)

    def tearDown(self) -> None:
        self.resolver.close()
        self.http.close()
        self.cms.close()

    def test_url_asset_is_uploaded_once_for_many_references(self) -> None:
        self.wordpress.add_download("https://images.test/a.png")
        asset = _asset("a")

        for _ in range(3):
            resolved = self.resolver.resolve([asset], ["a", "a"])

        self.assertEqual(len(self.wordpress.uploads), 1)
        upload = self.wordpress.uploads[0]
        self.assertEqual(upload["filename"], "a-file.png")
        self.assertEqual(upload["content_type"], "image/png")
        media = resolved["a"]
        self.assertEqual(media.remote_media_id, upload["id"])
        self.assertEqual(media.alt, "a alt")
        self.assertEqual(self.wordpress.media_meta[upload["id"]], {"alt_text": "a alt", "caption": "Caption"})

    def test_extension_falls_back_to_url_then_jpg(self) -> None:
        self.wordpress.add_download("https://images.test/b.webp", content_type="application/octet-stream")
        self.wordpress.add_download("https://images.test/c", content_type="application/octet-stream")
        assets = [
            _asset("b", url="https://images.test/b.webp"),
            _asset("c", url="https://images.test/c"),
        ]

        self.resolver.resolve(assets, ["b", "c"])

        self.assertEqual([upload["filename"] for upload in self.wordpress.uploads], ["b-file.webp", "c-file.jpg"])

    def test_unreferenced_assets_are_skipped(self) -> None:
        self.wordpress.add_download("https://images.test/a.png")

        resolved = self.resolver.resolve([_asset("a"), _asset("unused")], ["a"])

        self.assertEqual(set(resolved), {"a"})
        self.assertEqual(len(self.wordpress.uploads), 1)

    def test_cms_asset_is_fetched_not_uploaded(self) -> None:
        self.wordpress.add_media(77, "https://site.test/wp-content/uploads/existing.jpg")

        resolved = self.resolver.resolve([_asset("a", source="cms", url=None, cms_media_id=77)], ["a"])

        self.assertEqual(resolved["a"].remote_url, "https://site.test/wp-content/uploads/existing.jpg")
        self.assertEqual(self.wordpress.uploads, [])

    def test_missing_cms_media_is_a_resolution_error(self) -> None:
        with self.assertRaises(MediaResolutionError) as ctx:
            self.resolver.resolve([_asset("a", source="cms", url=None, cms_media_id=404)], ["a"])

        self.assertIn("HTTP 404", str(ctx.exception))

    def test_empty_download_is_an_error(self) -> None:
        self.wordpress.add_download("https://images.test/a.png", content=b"")

        with self.assertRaises(MediaResolutionError):
            self.resolver.resolve([_asset("a")], ["a"])

        self.assertEqual(self.wordpress.uploads, [])

    def test_upload_asset_reads_local_file(self) -> None:
        with TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "team.png"
            path.write_bytes(PNG_BYTES)

            self.resolver.resolve([_asset("a", source="upload", url=None, upload_path=str(path))], ["a"])

        self.assertEqual(self.wordpress.uploads[0]["filename"], "a-file.png")
        self.assertEqual(self.wordpress.uploads[0]["size"], len(PNG_BYTES))

    def test_unknown_source_aborts(self) -> None:
        with self.assertRaises(UnknownMediaSourceError):
            self.resolver.resolve([_asset("a", source="ftp")], ["a"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
