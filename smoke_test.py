from __future__ import annotations

import os
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

_TMP = tempfile.TemporaryDirectory()
os.environ["DATA_ROOT_DIR"] = str(Path(_TMP.name) / "data")
os.environ["INVENTORY_PATH"] = str(Path(_TMP.name) / "inventory.json")
os.environ["DB_PATH"] = str(Path(_TMP.name) / "cache.sqlite3")

import app as web_app  # noqa: E402
from models import STATUS_DISCOVERED, STATUS_DOWNLOADED, DocumentRecord  # noqa: E402
from pipeline import RunSummary  # noqa: E402


def make_record(rid: str, era: str, status: str) -> DocumentRecord:
    url = f"http://site.org/{rid}.pdf"
    return DocumentRecord(
        id=rid,
        era=era,
        year=2006,
        category="results",
        filename=f"{rid}.pdf",
        original_url=url,
        wayback_url=f"http://web.archive.org/web/20060504id_/{url}",
        timestamp="20060504000000",
        status=status,
    )


class AppSmokeTest(unittest.TestCase):
    def setUp(self) -> None:
        web_app.app.config["TESTING"] = True
        self.client = web_app.app.test_client()
        web_app.inventory.save(
            [
                make_record("a", "msbn", STATUS_DOWNLOADED),
                make_record("b", "msbn", STATUS_DISCOVERED),
                make_record("c", "hangastar", STATUS_DISCOVERED),
            ]
        )
        with web_app.JOBS_LOCK:
            web_app.JOBS.clear()

    def test_home_reports_inventory(self) -> None:
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertTrue(payload.get("ok"))
        self.assertEqual(payload["inventory"]["total"], 3)
        self.assertEqual(payload["inventory"]["status"], {STATUS_DOWNLOADED: 1, STATUS_DISCOVERED: 2})
        self.assertEqual(payload["inventory"]["eras"], {"msbn": 2, "hangastar": 1})

    def test_inventory_filters(self) -> None:
        response = self.client.get("/inventory", query_string={"era": "msbn", "status": STATUS_DISCOVERED})
        payload = response.get_json() or {}
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["items"][0]["originalUrl"], "http://site.org/b.pdf")

    def test_corrupt_inventory_is_reported(self) -> None:
        web_app.settings.inventory_path.write_text("[{", encoding="utf-8")
        response = self.client.get("/inventory")
        self.assertEqual(response.status_code, 500)
        self.assertFalse((response.get_json() or {}).get("ok"))

    def test_download_start_rejects_bad_limit(self) -> None:
        for limit in ("abc", "-1"):
            with self.subTest(limit=limit):
                response = self.client.post("/download/start", data={"limit": limit})
                self.assertEqual(response.status_code, 400)

    def test_status_rejects_unknown_job(self) -> None:
        response = self.client.get("/download/status/does-not-exist")
        self.assertEqual(response.status_code, 404)

    def test_download_job_runs_pipeline(self) -> None:
        fake = mock.MagicMock()
        fake.return_value.run.return_value = RunSummary(selected=2, downloaded=2)
        with mock.patch.object(web_app, "Pipeline", fake):
            response = self.client.post("/download/start", json={"era": "msbn", "limit": 2})
            self.assertEqual(response.status_code, 202)
            job_id = (response.get_json() or {})["job_id"]

            deadline = time.time() + 5
            state = None
            while time.time() < deadline:
                state = (self.client.get(f"/download/status/{job_id}").get_json() or {}).get("state")
                if state in ("done", "error"):
                    break
                time.sleep(0.05)

        self.assertEqual(state, "done")
        payload = self.client.get(f"/download/status/{job_id}").get_json() or {}
        self.assertEqual(payload["result"]["downloaded"], 2)
        self.assertEqual(payload["progress"]["percent"], 100)
        kwargs = fake.return_value.run.call_args.kwargs
        self.assertEqual((kwargs["era"], kwargs["limit"], kwargs["rescan"]), ("msbn", 2, False))

    def test_second_job_is_rejected_while_one_runs(self) -> None:
        with web_app.JOBS_LOCK:
            web_app.JOBS["busy"] = {"state": "running", "started_at": time.time()}
        response = self.client.post("/download/start", data={})
        self.assertEqual(response.status_code, 409)

    def test_simultaneous_starts_launch_one_job(self) -> None:
        release = threading.Event()

        def _slow_run(*_args, **_kwargs) -> RunSummary:
            release.wait(5)
            return RunSummary()

        fake = mock.MagicMock()
        fake.return_value.run.side_effect = _slow_run
        barrier = threading.Barrier(8)
        started: list = []
        rejected: list = []

        def _start() -> None:
            barrier.wait()
            try:
                started.append(web_app._start_download_job(None, None, False))
            except web_app.JobCapacityError:
                rejected.append(True)

        with mock.patch.object(web_app, "Pipeline", fake):
            threads = [threading.Thread(target=_start) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(5)
            release.set()
            deadline = time.time() + 5
            while web_app._has_active_job() and time.time() < deadline:
                time.sleep(0.05)

        self.assertEqual(len(started), 1)
        self.assertEqual(len(rejected), 7)
        self.assertLessEqual(fake.return_value.run.call_count, 1)

    def test_archive_serves_files_inside_data_root(self) -> None:
        target = web_app.settings.data_root / "msbn" / "assets" / "x.css"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"a{}")
        response = self.client.get("/archive/msbn/assets/x.css")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"a{}")
        response.close()

        response = self.client.get("/archive/msbn/..%2F..%2Finventory.json")
        self.assertEqual(response.status_code, 404)

    def test_diagnostics_endpoint_returns_ok_payload(self) -> None:
        response = self.client.get("/diagnostics")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertTrue(payload.get("ok"))
        self.assertIn("runtime", payload)
        self.assertTrue(payload["storage"]["inventory_exists"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
