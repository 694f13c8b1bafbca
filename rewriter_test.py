from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from assets import AssetStore
from errors import UnsafePath
from fake_archive import FakeResponse, FakeSession, make_resolver, make_settings, wayback
from models import DocumentRecord, ReferenceKind
from rewriter import DocumentRewriter


PAGE_URL = "http://site.org/foo/results.html"
TS = "20060504000000"


def make_record(**overrides) -> DocumentRecord:
    values = dict(
        id="DIGEST1",
        era="msbn",
        year=2006,
        category="results",
        filename="results.html",
        original_url=PAGE_URL,
        wayback_url=wayback(TS, PAGE_URL),
        timestamp=TS,
    )
    values.update(overrides)
    return DocumentRecord(**values)


class DocumentRewriterTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.settings = make_settings(self.root)
        self.session = FakeSession()
        self.resolver = make_resolver(self.settings, self.session)
        self.rewriter = DocumentRewriter(self.settings, self.resolver)
        self.record = make_record()
        self.store = AssetStore(self.settings, self.record.era)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def local(self, url: str, kind: ReferenceKind) -> str:
        return self.store.relative_link(self.store.filename_for(url, TS, kind))

    def test_unresolved_references_stay_verbatim(self) -> None:
        gif = "http://site.org/foo/a.gif"
        css = "http://site.org/css/b.css"
        self.session.ok(wayback(TS, gif, "im_"), b"GIF89a-bytes", "image/gif")
        self.session.ok(wayback(TS, css), b"body{color:red}", "text/css")
        body = (
            b'<html><head><link rel="stylesheet" href="/css/b.css"></head>'
            b'<body><img src="a.gif"><script src="c.js"></script></body></html>'
        )

        result = self.rewriter.rewrite(body, self.record, self.store)
        html = result.body.decode("utf-8")

        self.assertEqual(result.rewritten_sites, 2)
        self.assertEqual(len(result.failures), 1)
        self.assertEqual(result.failures[0].reference.raw, "c.js")
        self.assertIn(f'src="{self.local(gif, ReferenceKind.IMAGE)}"', html)
        self.assertIn(f'href="{self.local(css, ReferenceKind.STYLESHEET)}"', html)
        self.assertIn('src="c.js"', html)
        self.assertEqual(self.store.path_for(self.store.filename_for(gif, TS, ReferenceKind.IMAGE)).read_bytes(), b"GIF89a-bytes")

    def test_each_distinct_asset_is_fetched_once(self) -> None:
        gif = "http://site.org/foo/a.gif"
        self.session.ok(wayback(TS, gif, "im_"), b"GIF89a", "image/gif")
        body = b'<body><img src="a.gif"><img src="a.gif"><img src="/foo/a.gif"></body>'

        result = self.rewriter.rewrite(body, self.record, self.store)

        self.assertEqual(result.rewritten_sites, 3)
        self.assertEqual(self.session.calls, [wayback(TS, gif, "im_")])
        self.assertEqual(result.body.decode("utf-8").count(self.local(gif, ReferenceKind.IMAGE)), 3)

    def test_stylesheet_detected_by_type(self) -> None:
        css = "http://site.org/foo/x.css"
        self.session.ok(wayback(TS, css), b"p{}", "text/css")
        body = b'<head><link type="text/css" href="x.css"></head>'

        result = self.rewriter.rewrite(body, self.record, self.store)

        self.assertEqual(result.rewritten_sites, 1)
        self.assertEqual(result.outcomes[0].reference.kind, ReferenceKind.STYLESHEET)

    def test_attachments_are_archived_but_pages_are_not(self) -> None:
        pdf = "http://site.org/foo/docs/results2006.pdf"
        self.session.ok(wayback(TS, pdf), b"%PDF-1.4", "application/pdf")
        body = b'<body><a href="docs/results2006.pdf">PDF</a><a href="other.html">next</a></body>'

        result = self.rewriter.rewrite(body, self.record, self.store)
        html = result.body.decode("utf-8")

        self.assertEqual(result.rewritten_sites, 1)
        self.assertIn(self.local(pdf, ReferenceKind.ATTACHMENT), html)
        self.assertTrue(self.local(pdf, ReferenceKind.ATTACHMENT).endswith(".pdf"))
        self.assertIn('href="other.html"', html)

    def test_background_attributes_and_input_images(self) -> None:
        bg = "http://site.org/foo/bg.jpg"
        button = "http://site.org/foo/go.gif"
        self.session.ok(wayback(TS, bg, "im_"), b"JFIF", "image/jpeg")
        self.session.ok(wayback(TS, button, "im_"), b"GIF89a", "image/gif")
        body = b'<table><tr><td background="bg.jpg"><input type="image" src="go.gif"></td></tr></table>'

        result = self.rewriter.rewrite(body, self.record, self.store)
        html = result.body.decode("utf-8")

        self.assertEqual(result.rewritten_sites, 2)
        self.assertIn(f'background="{self.local(bg, ReferenceKind.IMAGE)}"', html)

    def test_existing_assets_are_reused_without_requests(self) -> None:
        gif = "http://site.org/foo/a.gif"
        self.store.store(gif, TS, b"GIF89a", ReferenceKind.IMAGE)
        body = b'<body><img src="a.gif"></body>'

        result = self.rewriter.rewrite(body, self.record, self.store)

        self.assertEqual(self.session.calls, [])
        self.assertEqual(result.rewritten_sites, 1)
        self.assertTrue(result.outcomes[0].asset.reused)

    def test_local_links_and_unfetchable_references_are_left_alone(self) -> None:
        body = (
            b'<body><img src="../../assets/0123456789abcdef.gif">'
            b'<img src="data:image/gif;base64,R0lGODlh"><a href="#top">top</a></body>'
        )

        result = self.rewriter.rewrite(body, self.record, self.store)

        self.assertIs(result.body, body)
        self.assertFalse(result.changed)
        self.assertEqual(self.session.calls, [])
        self.assertEqual(result.failures, [])
        self.assertEqual(len(result.outcomes), 1)
        self.assertTrue(result.outcomes[0].skipped)

    def test_archived_references_resolve_to_original_url(self) -> None:
        gif = "http://www.msbn.tv/logo.gif"
        self.session.ok(wayback(TS, gif, "im_"), b"GIF89a", "image/gif")
        body = b'<body><img src="/web/20060101im_/http://www.msbn.tv/logo.gif"></body>'

        result = self.rewriter.rewrite(body, self.record, self.store)

        self.assertEqual(result.outcomes[0].canonical_url, gif)
        self.assertEqual(result.rewritten_sites, 1)

    def test_links_escaping_data_root_are_refused(self) -> None:
        settings = make_settings(self.root, layout_depth=6)
        rewriter = DocumentRewriter(settings, make_resolver(settings, self.session))
        store = AssetStore(settings, self.record.era)
        gif = "http://site.org/foo/a.gif"
        self.session.ok(wayback(TS, gif, "im_"), b"GIF89a", "image/gif")
        target = settings.data_root / "msbn" / "2006" / "results" / "results.html"

        with self.assertRaises(UnsafePath):
            rewriter.rewrite(b'<img src="a.gif">', self.record, store, document_path=target)

    def test_failed_fetch_leaves_no_asset_file(self) -> None:
        self.session.add(wayback(TS, "http://site.org/foo/a.gif", "im_"), FakeResponse(404, b"gone"))
        result = self.rewriter.rewrite(b'<img src="a.gif">', self.record, self.store)

        self.assertFalse(result.changed)
        self.assertFalse(self.store.assets_dir.exists() and any(self.store.assets_dir.iterdir()))


if __name__ == "__main__":
    unittest.main(verbosity=2)
