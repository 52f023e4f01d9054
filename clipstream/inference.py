"""
Inference collaborators: speech-to-text, keyword tags and visual embeddings.

HttpInferenceClient talks to a remote inference service. LocalInference loads
faster-whisper, KeyBERT and CLIP in-process for single-box deployments.
Both return the same shapes:
    transcribe(path) -> {"segments": [{"start", "end", "text"}], "tags": [str]}
    embed(path)      -> list[float]
"""

import io
import logging
import threading
from pathlib import Path

import numpy as np
import requests

from clipstream import config, media
from clipstream.errors import PermanentError, TransientError

log = logging.getLogger("clipstream.inference")


def validate_segments(segments) -> list:
    """Normalize transcript segments; anything malformed is a permanent failure."""
    if not isinstance(segments, list):
        raise PermanentError("transcript is not a list of segments")
    clean = []
    for i, seg in enumerate(segments):
        if not isinstance(seg, dict):
            raise PermanentError(f"transcript segment {i} is not an object")
        try:
            start = float(seg["start"])
            end = float(seg["end"])
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentError(f"transcript segment {i} has bad timestamps") from e
        if start < 0 or end < start:
            raise PermanentError(f"transcript segment {i} has an inverted time range")
        text = seg.get("text")
        if text is not None and not isinstance(text, str):
            raise PermanentError(f"transcript segment {i} text is not a string")
        clean.append({"start": round(start, 2), "end": round(end, 2), "text": (text or "").strip()})
    clean.sort(key=lambda s: (s["start"], s["end"]))
    return clean


def normalize_embedding(vec, dim: int = None) -> np.ndarray:
    """L2-normalize to float32; the wrong dimensionality is a permanent failure."""
    dim = dim or config.EMBEDDING_DIM
    try:
        arr = np.asarray(vec, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as e:
        raise PermanentError("embedding is not a numeric vector") from e
    if arr.shape[0] != dim:
        raise PermanentError(f"embedding has {arr.shape[0]} dims, expected {dim}")
    if not np.all(np.isfinite(arr)):
        raise PermanentError("embedding contains non-finite values")
    norm = float(np.linalg.norm(arr))
    if norm == 0:
        raise PermanentError("embedding is the zero vector")
    return arr / norm


class HttpInferenceClient:
    """HTTP client for the inference service."""

    def __init__(self, base_url: str = None, timeout: int = None):
        self.base_url = (base_url or config.INFERENCE_URL).rstrip("/")
        self.timeout = timeout or config.INFERENCE_TIMEOUT
        self._local = threading.local()

    def _session(self) -> requests.Session:
        """Return a per-thread Session."""
        if not hasattr(self._local, "session"):
            self._local.session = requests.Session()
        return self._local.session

    def _post_file(self, path: str, video_path: Path) -> dict:
        url = f"{self.base_url}{path}"
        try:
            with open(video_path, "rb") as fh:
                resp = self._session().post(
                    url,
                    files={"file": (video_path.name, fh, "video/mp4")},
                    timeout=self.timeout,
                )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"inference service unavailable: {e}") from e

        if resp.status_code in (400, 415, 422):
            raise PermanentError(f"inference rejected {video_path.name}: {resp.text[:300]}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(f"inference returned HTTP {resp.status_code}")
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise TransientError(str(e)) from e
        try:
            return resp.json()
        except ValueError as e:
            raise PermanentError(f"inference returned non-JSON body for {video_path.name}") from e

    def transcribe(self, video_path: Path) -> dict:
        data = self._post_file("/v1/transcribe", video_path)
        return {
            "segments": data.get("segments"),
            "tags": [t for t in data.get("tags") or [] if isinstance(t, str)],
        }

    def embed(self, video_path: Path) -> list:
        data = self._post_file("/v1/embed", video_path)
        if "embedding" not in data:
            raise PermanentError("inference response has no embedding")
        return data["embedding"]

    def health_check(self) -> bool:
        try:
            resp = self._session().get(f"{self.base_url}/health", timeout=5)
            return resp.status_code == 200
        except requests.RequestException:
            return False


def _detect_device() -> tuple[str, str]:
    """Pick CUDA when an NVIDIA GPU is reachable, otherwise fall back to CPU."""
    try:
        import ctranslate2
        if "float16" in ctranslate2.get_supported_compute_types("cuda"):
            log.info("CUDA device detected, Whisper will use GPU")
            return "cuda", "float16"
    except (ImportError, RuntimeError, ValueError):
        pass
    log.info("No CUDA device found, Whisper will use CPU")
    return "cpu", "int8"


class LocalInference:
    """In-process models, loaded lazily on first use and shared across worker threads."""

    def __init__(self, whisper_model: str = None, whisper_threads: int = None):
        self.whisper_model = whisper_model or config.WHISPER_MODEL
        self.whisper_threads = whisper_threads or config.WHISPER_THREADS
        self._lock = threading.Lock()
        self._whisper = None
        self._kw_model = None
        self._clip_model = None
        self._clip_preprocess = None

    def _ensure_whisper(self):
        with self._lock:
            if self._whisper is None:
                from faster_whisper import WhisperModel
                device, compute_type = _detect_device()
                kwargs = dict(device=device, compute_type=compute_type)
                if device == "cpu":
                    kwargs["cpu_threads"] = self.whisper_threads
                self._whisper = WhisperModel(self.whisper_model, **kwargs)
        return self._whisper

    def _ensure_keybert(self):
        with self._lock:
            if self._kw_model is None:
                from keybert import KeyBERT
                self._kw_model = KeyBERT(model="all-MiniLM-L6-v2")
        return self._kw_model

    def _ensure_clip(self):
        """Lazy-load CLIP ViT-B-32 (512-dim image embeddings)."""
        with self._lock:
            if self._clip_model is None:
                import open_clip
                model, _, preprocess = open_clip.create_model_and_transforms(
                    "ViT-B-32", pretrained="laion2b_s34b_b79k"
                )
                model.eval()
                self._clip_model = model
                self._clip_preprocess = preprocess
                log.info("CLIP ViT-B-32 model loaded")
        return self._clip_model, self._clip_preprocess

    def transcribe(self, video_path: Path) -> dict:
        whisper = self._ensure_whisper()
        segments, _ = whisper.transcribe(str(video_path))
        out = [{"start": s.start, "end": s.end, "text": s.text.strip()} for s in segments]
        text = " ".join(s["text"] for s in out)
        return {"segments": out, "tags": self._extract_tags(text)}

    def _extract_tags(self, text: str) -> list:
        """Key phrases from the transcript; short transcripts get none."""
        if not text or len(text.split()) < 10:
            return []
        keywords = self._ensure_keybert().extract_keywords(
            text, keyphrase_ngram_range=(1, 2), stop_words="english",
            top_n=5, diversity=0.5, use_mmr=True,
        )
        return [kw for kw, score in keywords if score > 0.25][:5]

    def embed(self, video_path: Path) -> list:
        """Average of CLIP keyframe embeddings."""
        import torch
        from PIL import Image

        model, preprocess = self._ensure_clip()
        duration = media.extract_metadata(video_path).get("duration", 0)
        frames = [
            Image.open(io.BytesIO(png)).convert("RGB")
            for png in media.extract_keyframes(video_path, duration, n=3)
        ]
        if not frames:
            raise PermanentError(f"no frames could be extracted from {video_path.name}")

        images = torch.stack([preprocess(f) for f in frames])
        with torch.no_grad():
            feats = model.encode_image(images)
            feats = feats / feats.norm(dim=-1, keepdim=True)
        avg = feats.mean(dim=0)
        avg = avg / avg.norm()
        return avg.cpu().numpy().astype(np.float32).tolist()


def build_inference_client(backend: str = None):
    backend = backend or config.INFERENCE_BACKEND
    if backend == "local":
        return LocalInference()
    if backend == "http":
        return HttpInferenceClient()
    raise ValueError(f"unknown inference backend: {backend}")
