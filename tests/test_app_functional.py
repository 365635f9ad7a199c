import importlib
import json
import os
import sys
import tempfile
import time
import unittest
import uuid
from pathlib import Path
from urllib.parse import urlparse

from _multipart_body import build_multipart, content_type

_ENV_KEYS = [
    "QUICKDROP_STORAGE_ROOT",
    "QUICKDROP_DATA_DIR",
    "QUICKDROP_UPLOAD_DIR",
    "QUICKDROP_LOGS_DIR",
    "QUICKDROP_CLEANUP_ENABLED",
    "QUICKDROP_ENV",
    "MAX_FILE_SIZE",
    "MAX_EXPIRATION_HOURS",
    "BASE_URL",
]


class QuickDropAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["QUICKDROP_STORAGE_ROOT"] = str(root)
        os.environ["QUICKDROP_DATA_DIR"] = str(root / "data")
        os.environ["QUICKDROP_UPLOAD_DIR"] = str(root / "uploads")
        os.environ["QUICKDROP_LOGS_DIR"] = str(root / "logs")
        os.environ["QUICKDROP_CLEANUP_ENABLED"] = "false"
        os.environ["MAX_FILE_SIZE"] = str(5 * 1024 * 1024)
        os.environ["BASE_URL"] = "https://share.example.com"
        self._reload_app()
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()
        self.uploads_dir = root / "uploads"

    def tearDown(self):
        self.app_module.reaper.stop()
        self.storage_dir.cleanup()
        for key in _ENV_KEYS:
            os.environ.pop(key, None)
        for module in [name for name in sys.modules if name.startswith("quickdrop")]:
            sys.modules.pop(module, None)

    def _reload_app(self):
        for module in [name for name in sys.modules if name.startswith("quickdrop")]:
            del sys.modules[module]
        self.app_module = importlib.import_module("quickdrop.app")
        self.app = self.app_module.app
        self.store = self.app_module.store

    def _upload(self, parts):
        return self.client.post(
            "/api/upload",
            data=build_multipart(parts),
            content_type=content_type(),
        )

    def _stored_files(self):
        return sorted(path for path in self.uploads_dir.rglob("*") if path.is_file())

    def _path(self, url):
        return urlparse(url).path

    def test_single_file_scenario(self):
        content = os.urandom(3 * 1024 * 1024)
        response = self._upload(
            [
                ("expirationHours", None, "1"),
                ("passwordProtected", None, "false"),
                ("file", "report.pdf", content),
            ]
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertNotIn("password", payload)
        self.assertFalse(payload["isBatch"])
        self.assertTrue(payload["url"].startswith("https://share.example.com/api/download/"))
        self.assertTrue(payload["url"].endswith(payload["id"]))

        record = self.store.get_file_by_id(payload["id"])
        self.assertIsNotNone(record)
        self.assertIsNone(record.batch_id)
        self.assertIsNone(record.password_hash)
        self.assertEqual(record.size, len(content))
        self.assertAlmostEqual(record.expires_at - record.created_at, 3600, places=3)

        download = self.client.get(self._path(payload["url"]))
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, content)
        self.assertEqual(download.headers["Content-Length"], str(len(content)))
        self.assertEqual(download.headers["Content-Type"], "application/octet-stream")
        self.assertEqual(
            download.headers["Content-Disposition"], 'attachment; filename="report.pdf"'
        )
        download.close()

    def test_batch_scenario_with_password(self):
        response = self._upload(
            [
                ("expirationHours", None, "24"),
                ("passwordProtected", None, "true"),
                ("file", "first.txt", b"first file"),
                ("file", "second.csv", b"a,b\n1,2\n"),
            ]
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertTrue(payload["isBatch"])
        self.assertEqual(payload["fileCount"], 2)
        password = payload["password"]
        self.assertGreaterEqual(len(password), 12)

        members = self.store.get_files_by_batch_id(payload["id"])
        self.assertEqual(len(members), 2)
        self.assertEqual({record.batch_id for record in members}, {payload["id"]})
        self.assertEqual(len({record.expires_at for record in members}), 1)
        self.assertEqual(len({record.password_hash for record in members}), 1)
        self.assertNotIn(password, {record.password_hash for record in members})

        info = self.client.get(f"/api/download/{payload['id']}/info")
        self.assertEqual(info.status_code, 200)
        info_payload = info.get_json()
        self.assertTrue(info_payload["isBatch"])
        self.assertTrue(info_payload["isProtected"])
        self.assertEqual(info_payload["fileCount"], 2)
        self.assertEqual(
            [entry["filename"] for entry in info_payload["files"]],
            ["first.txt", "second.csv"],
        )
        self.assertEqual(info_payload["totalSize"], len(b"first file") + len(b"a,b\n1,2\n"))

        expected = {"first.txt": b"first file", "second.csv": b"a,b\n1,2\n"}
        for entry in info_payload["files"]:
            member_path = f"/api/download/{payload['id']}/files/{entry['id']}"
            forbidden = self.client.get(member_path)
            self.assertEqual(forbidden.status_code, 403)
            self.assertIn("Password required", forbidden.get_json()["error"])

            wrong = self.client.post(member_path, json={"password": "not-the-password"})
            self.assertEqual(wrong.status_code, 403)

            allowed = self.client.post(member_path, json={"password": password})
            self.assertEqual(allowed.status_code, 200)
            self.assertEqual(allowed.data, expected[entry["filename"]])
            allowed.close()

    def test_verify_endpoint(self):
        response = self._upload(
            [("passwordProtected", None, "true"), ("file", "notes.txt", b"secret notes")]
        )
        payload = response.get_json()
        verify_path = f"/api/download/{payload['id']}/verify"

        ok = self.client.post(verify_path, json={"password": payload["password"]})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.get_json()["filename"], "notes.txt")
        self.assertTrue(ok.get_json()["isProtected"])

        for body in ({"password": "wrong"}, {"password": 12345}, {}):
            rejected = self.client.post(verify_path, json=body)
            self.assertEqual(rejected.status_code, 403)
            self.assertEqual(rejected.get_json()["error"], "Invalid password")

        form = self.client.post(verify_path, data={"password": payload["password"]})
        self.assertEqual(form.status_code, 200)

    def test_describe_unprotected_file(self):
        payload = self._upload([("file", "photo.png", b"\x89PNG data")]).get_json()
        info = self.client.get(f"/api/download/{payload['id']}/info")
        self.assertEqual(info.status_code, 200)
        body = info.get_json()
        self.assertFalse(body["isBatch"])
        self.assertFalse(body["isProtected"])
        self.assertEqual(body["filename"], "photo.png")
        self.assertEqual(body["size"], len(b"\x89PNG data"))

    def test_expiration_zero_rejected_before_write(self):
        response = self._upload(
            [("expirationHours", None, "0"), ("file", "report.pdf", b"x" * 1024)]
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("Expiration must be between 1 hour and 168 hours", response.get_json()["error"])
        self.assertIn("7.0 days", response.get_json()["error"])
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.store.count_files(), 0)

    def test_expiration_after_file_part_cleans_up(self):
        response = self._upload(
            [("file", "report.pdf", b"x" * 1024), ("expirationHours", None, "500")]
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.store.count_files(), 0)

    def test_disallowed_extension_rejected(self):
        for name in ("malware.exe", "no_extension", ".pdf"):
            response = self._upload([("file", name, b"MZ" * 100)])
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["error"], "File type not allowed")
        self.assertEqual(self._stored_files(), [])

    def test_bad_second_part_rolls_back_first(self):
        response = self._upload(
            [
                ("file", "ok.txt", b"fine"),
                ("file", "bad.exe", b"nope"),
            ]
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.store.count_files(), 0)

    def test_oversized_upload_rejected(self):
        too_big = b"z" * (5 * 1024 * 1024 + 1)
        response = self._upload([("file", "huge.zip", too_big)])
        self.assertEqual(response.status_code, 413)
        self.assertIn("5.00MB", response.get_json()["error"])
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(self.store.count_files(), 0)

    def test_no_files_provided(self):
        response = self._upload([("expirationHours", None, "2")])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "No file provided")

    def test_invalid_content_type(self):
        response = self.client.post(
            "/api/upload",
            data=json.dumps({"file": "x"}),
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Invalid content type")

    def test_truncated_body_rejected(self):
        body = build_multipart([("file", "cut.txt", b"a" * 4096)])
        response = self.client.post(
            "/api/upload",
            data=body[: len(body) // 2],
            content_type=content_type(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stored_files(), [])

    def test_unknown_and_expired_are_indistinguishable(self):
        payload = self._upload([("file", "old.txt", b"old")]).get_json()
        with self.store.get_db() as conn:
            conn.execute(
                "UPDATE files SET expires_at = ? WHERE id = ?",
                (time.time() - 0.001, payload["id"]),
            )

        unknown_id = str(uuid.uuid4())
        responses = [
            self.client.get(f"/api/download/{payload['id']}"),
            self.client.get(f"/api/download/{unknown_id}"),
            self.client.post(f"/api/download/{payload['id']}", json={"password": "x"}),
            self.client.post(f"/api/download/{unknown_id}", json={"password": "x"}),
            self.client.get(f"/api/download/{payload['id']}/info"),
            self.client.get(f"/api/download/{unknown_id}/info"),
        ]
        bodies = {json.dumps(response.get_json(), sort_keys=True) for response in responses}
        self.assertEqual({response.status_code for response in responses}, {404})
        self.assertEqual(len(bodies), 1)

    def test_missing_content_is_not_found(self):
        payload = self._upload([("file", "gone.txt", b"bytes")]).get_json()
        record = self.store.get_file_by_id(payload["id"])
        Path(record.storage_path).unlink()
        self.assertEqual(self.client.get(f"/api/download/{payload['id']}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/download/{payload['id']}/info").status_code, 404)

    def test_invalid_identifier(self):
        response = self.client.get("/api/download/not-a-uuid")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "Invalid file ID")

    def test_member_must_belong_to_batch(self):
        first = self._upload([("file", "a.txt", b"a"), ("file", "b.txt", b"b")]).get_json()
        other = self._upload([("file", "c.txt", b"c")]).get_json()
        response = self.client.get(f"/api/download/{first['id']}/files/{other['id']}")
        self.assertEqual(response.status_code, 404)

    def test_batch_without_selector_requires_choice(self):
        payload = self._upload([("file", "a.txt", b"a"), ("file", "b.txt", b"b")]).get_json()
        response = self.client.get(f"/api/download/{payload['id']}")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(response.get_json()["files"]), 2)

    def test_unicode_filename_disposition(self):
        payload = self._upload([("file", "résumé final.pdf", b"%PDF-1.4")]).get_json()
        response = self.client.get(f"/api/download/{payload['id']}")
        self.assertEqual(response.status_code, 200)
        disposition = response.headers["Content-Disposition"]
        self.assertIn('filename="resume final.pdf"', disposition)
        self.assertIn("filename*=UTF-8''r%C3%A9sum%C3%A9%20final.pdf", disposition)
        response.close()

    def test_legacy_encoded_filename_accepted(self):
        response = self._upload([("file", "报告.pdf".encode("gbk"), b"%PDF-1.4")])
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["files"][0]["filename"], "报告.pdf")

        download = self.client.get(f"/api/download/{payload['id']}")
        self.assertEqual(download.status_code, 200)
        self.assertIn(
            "filename*=UTF-8''%E6%8A%A5%E5%91%8A.pdf",
            download.headers["Content-Disposition"],
        )
        download.close()

    def test_too_many_form_parts(self):
        parts = [("note", None, "x")] * 1001 + [("file", "a.txt", b"a")]
        response = self._upload(parts)
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.get_json()["error"], "Too many form parts")
        self.assertEqual(self._stored_files(), [])

    def test_upload_sizes_ignore_declared_length(self):
        content = b"0123456789" * 1000
        response = self._upload([("file", "data.csv", content)])
        payload = response.get_json()
        self.assertEqual(payload["files"][0]["size"], len(content))

    def test_request_id_header_round_trip(self):
        response = self.client.get("/health", headers={"X-Request-ID": "abc123"})
        self.assertEqual(response.headers.get("X-Request-ID"), "abc123")

    def test_health_reports_components(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["checks"]["database"], "ok")
        self.assertEqual(body["checks"]["uploads_writable"], "ok")
        self.assertFalse(body["checks"]["scheduler_running"])

    def test_reaper_sweep_through_app(self):
        payload = self._upload([("file", "old.txt", b"old")]).get_json()
        record = self.store.get_file_by_id(payload["id"])
        with self.store.get_db() as conn:
            conn.execute(
                "UPDATE files SET expires_at = ? WHERE id = ?",
                (time.time() - 0.001, payload["id"]),
            )
        self.assertEqual(self.app_module.reaper.run_once(), 1)
        self.assertFalse(Path(record.storage_path).exists())
        self.assertIsNone(self.store.get_file_by_id(payload["id"]))
        self.assertEqual(self.app_module.reaper.run_once(), 0)


class InternalErrorVerbosityTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["QUICKDROP_STORAGE_ROOT"] = str(root)
        os.environ["QUICKDROP_CLEANUP_ENABLED"] = "false"

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in _ENV_KEYS:
            os.environ.pop(key, None)
        for module in [name for name in sys.modules if name.startswith("quickdrop")]:
            sys.modules.pop(module, None)

    def _client(self, environment):
        os.environ["QUICKDROP_ENV"] = environment
        for module in [name for name in sys.modules if name.startswith("quickdrop")]:
            del sys.modules[module]
        app_module = importlib.import_module("quickdrop.app")
        app_module.app.config.update(TESTING=True)
        return app_module

    def _broken_describe(self, app_module):
        def explode(*args, **kwargs):
            raise RuntimeError("database exploded at /var/secret")

        app_module.access.describe = explode
        return app_module.app.test_client().get(f"/api/download/{uuid.uuid4()}/info")

    def test_production_hides_details(self):
        response = self._broken_describe(self._client("production"))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()["error"], "Failed to get file information")

    def test_development_shows_details(self):
        response = self._broken_describe(self._client("development"))
        self.assertEqual(response.status_code, 500)
        self.assertIn("database exploded", response.get_json()["error"])


if __name__ == "__main__":
    unittest.main()
