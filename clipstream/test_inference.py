"""Unit tests for the inference collaborators and the object storage wrapper."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import requests
from urllib3.exceptions import HTTPError

from clipstream.errors import PermanentError, TransientError
from clipstream.inference import (
    HttpInferenceClient,
    LocalInference,
    build_inference_client,
    normalize_embedding,
    validate_segments,
)
from clipstream.storage import MinioStorage


# ---------------------------------------------------------------------------
# Response validation
# ---------------------------------------------------------------------------

class TestValidateSegments(unittest.TestCase):
    def test_sorts_and_strips(self):
        segments = validate_segments([
            {"start": 5, "end": 7.333, "text": " second "},
            {"start": "0", "end": "2", "text": "first"},
            {"start": 8, "end": 9},
        ])
        self.assertEqual(segments, [
            {"start": 0.0, "end": 2.0, "text": "first"},
            {"start": 5.0, "end": 7.33, "text": "second"},
            {"start": 8.0, "end": 9.0, "text": ""},
        ])

    def test_malformed_is_permanent(self):
        for bad in ("text", [1], [{"start": 1}], [{"start": 3, "end": 1}], [{"start": 0, "end": 1, "text": 5}]):
            with self.subTest(bad=bad), self.assertRaises(PermanentError):
                validate_segments(bad)


class TestNormalizeEmbedding(unittest.TestCase):
    def test_unit_length_float32(self):
        vec = normalize_embedding([3.0, 4.0], dim=2)
        self.assertEqual(vec.dtype, np.float32)
        np.testing.assert_allclose(vec, [0.6, 0.8], rtol=1e-6)

    def test_rejects_bad_vectors(self):
        for bad in ([1.0, 2.0, 3.0], [0.0, 0.0], [float("nan"), 1.0], ["a", "b"]):
            with self.subTest(bad=bad), self.assertRaises(PermanentError):
                normalize_embedding(bad, dim=2)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class TestHttpInferenceClient(unittest.TestCase):
    def setUp(self):
        fd, path = tempfile.mkstemp(suffix=".mp4")
        os.write(fd, b"fake video")
        os.close(fd)
        self.video = Path(path)
        self.addCleanup(os.unlink, path)

        self.client = HttpInferenceClient(base_url="http://inference:8000/", timeout=5)
        patcher = patch.object(HttpInferenceClient, "_session")
        self.session = patcher.start().return_value
        self.addCleanup(patcher.stop)

    def respond(self, status=200, body=None):
        resp = MagicMock(status_code=status, text="error body")
        resp.json.return_value = body or {}
        if status >= 400:
            resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
        self.session.post.return_value = resp

    def test_transcribe(self):
        self.respond(body={"segments": [{"start": 0, "end": 1, "text": "hi"}], "tags": ["goal", 3]})
        result = self.client.transcribe(self.video)
        self.assertEqual(result["tags"], ["goal"])
        url = self.session.post.call_args[0][0]
        self.assertEqual(url, "http://inference:8000/v1/transcribe")
        self.assertEqual(self.session.post.call_args[1]["timeout"], 5)

    def test_embed(self):
        self.respond(body={"embedding": [0.1, 0.2]})
        self.assertEqual(self.client.embed(self.video), [0.1, 0.2])

    def test_embed_without_vector_is_permanent(self):
        self.respond(body={"dims": 2})
        with self.assertRaises(PermanentError):
            self.client.embed(self.video)

    def test_server_errors_are_transient(self):
        for status in (429, 500, 503, 404):
            self.respond(status=status)
            with self.subTest(status=status), self.assertRaises(TransientError):
                self.client.transcribe(self.video)

    def test_rejected_media_is_permanent(self):
        self.respond(status=415)
        with self.assertRaises(PermanentError):
            self.client.transcribe(self.video)

    def test_connection_error_is_transient(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransientError):
            self.client.embed(self.video)

    def test_non_json_body_is_permanent(self):
        self.respond()
        self.session.post.return_value.json.side_effect = ValueError("not json")
        with self.assertRaises(PermanentError):
            self.client.embed(self.video)


class TestBuildInferenceClient(unittest.TestCase):
    def test_backends(self):
        self.assertIsInstance(build_inference_client("http"), HttpInferenceClient)
        self.assertIsInstance(build_inference_client("local"), LocalInference)
        with self.assertRaises(ValueError):
            build_inference_client("quantum")


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

class TestMinioStorage(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.storage = MinioStorage(client=self.client, bucket="videos")

    def test_ensure_bucket_creates_once(self):
        self.client.bucket_exists.return_value = False
        self.storage.ensure_bucket()
        self.client.make_bucket.assert_called_once_with("videos")

        self.client.reset_mock()
        self.client.bucket_exists.return_value = True
        self.storage.ensure_bucket()
        self.client.make_bucket.assert_not_called()

    def test_fetch_and_put(self):
        dest = Path("/tmp/work/source")
        self.assertEqual(self.storage.fetch("uploads/v1/raw.mp4", dest), dest)
        self.client.fget_object.assert_called_once_with("videos", "uploads/v1/raw.mp4", str(dest))

        self.storage.put("videos/v1/video.mp4", Path("/tmp/work/video.mp4"), content_type="video/mp4")
        self.client.fput_object.assert_called_once_with(
            "videos", "videos/v1/video.mp4", "/tmp/work/video.mp4", content_type="video/mp4"
        )

    def test_unreachable_storage_is_transient(self):
        self.client.fget_object.side_effect = HTTPError("connection reset")
        with self.assertRaises(TransientError):
            self.storage.fetch("uploads/v1/raw.mp4", Path("/tmp/x"))
        self.client.fput_object.side_effect = HTTPError("connection reset")
        with self.assertRaises(TransientError):
            self.storage.put("videos/v1/video.mp4", Path("/tmp/x"))

    def test_remove_failure_is_logged_not_raised(self):
        self.client.remove_object.side_effect = HTTPError("gone")
        with self.assertLogs("clipstream.storage", level="WARNING"):
            self.storage.remove("videos/v1/video.mp4")


if __name__ == "__main__":
    unittest.main()
