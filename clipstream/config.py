"""
ClipStream pipeline configuration.
Every tunable is read from the environment once, at import time.
"""

import os
from pathlib import Path

DB_PATH = os.getenv("DB_PATH", "/data/clipstream.db")

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "localhost:9000")
MINIO_ACCESS = os.getenv("MINIO_ACCESS_KEY", "clipstream")
MINIO_SECRET = os.getenv("MINIO_SECRET_KEY", "changeme123")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "videos")
MINIO_SSL = os.getenv("MINIO_USE_SSL", "false") == "true"
PRESIGN_EXPIRY_MINUTES = int(os.getenv("PRESIGN_EXPIRY_MINUTES", "60"))

# "http" talks to a remote inference service, "local" loads the models in-process
INFERENCE_BACKEND = os.getenv("INFERENCE_BACKEND", "http")
INFERENCE_URL = os.getenv("INFERENCE_URL", "http://inference:8000").rstrip("/")
INFERENCE_TIMEOUT = int(os.getenv("INFERENCE_TIMEOUT", "300"))
WHISPER_MODEL = os.getenv("WHISPER_MODEL", "base")
WHISPER_THREADS = int(os.getenv("WHISPER_THREADS", "4"))

MAX_CONCURRENT = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))
FFMPEG_THREADS = os.getenv("FFMPEG_THREADS", "2")
WORK_DIR = Path(os.getenv("WORK_DIR", "/tmp/clipstream"))

# Queue / retry parameters
LEASE_SECONDS = int(os.getenv("LEASE_SECONDS", "900"))
RECLAIM_INTERVAL = int(os.getenv("RECLAIM_INTERVAL", "60"))
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = int(os.getenv("RETRY_BASE_DELAY", "30"))  # seconds; 30s, 60s, 120s, …
RETRY_FACTOR = float(os.getenv("RETRY_FACTOR", "2"))
RETRY_MAX_DELAY = int(os.getenv("RETRY_MAX_DELAY", "1800"))
STAGE_DEADLINE_SECONDS = int(os.getenv("STAGE_DEADLINE_SECONDS", "600"))
HOLD_WAIT_SECONDS = int(os.getenv("HOLD_WAIT_SECONDS", "120"))

# Similarity engine
EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "512"))
DUPLICATE_THRESHOLD = float(os.getenv("DUPLICATE_THRESHOLD", "0.97"))
POV_THRESHOLD = float(os.getenv("POV_THRESHOLD", "0.85"))
SIMILAR_THRESHOLD = float(os.getenv("SIMILAR_THRESHOLD", "0.70"))
POV_WINDOW_SECONDS = int(os.getenv("POV_WINDOW_SECONDS", "7200"))
LSH_TABLES = int(os.getenv("LSH_TABLES", "8"))
LSH_BITS = int(os.getenv("LSH_BITS", "8"))
LSH_SEED = int(os.getenv("LSH_SEED", "1337"))
EXACT_SCAN_LIMIT = int(os.getenv("EXACT_SCAN_LIMIT", "2048"))

# Search ranking
SEARCH_RECENCY_WEIGHT = float(os.getenv("SEARCH_RECENCY_WEIGHT", "0.5"))
SEARCH_HALF_LIFE_DAYS = float(os.getenv("SEARCH_HALF_LIFE_DAYS", "30"))
SEARCH_ENGAGEMENT_WEIGHT = float(os.getenv("SEARCH_ENGAGEMENT_WEIGHT", "0.1"))
SEARCH_MAX_RESULTS = int(os.getenv("SEARCH_MAX_RESULTS", "50"))
SUGGESTION_LIMIT = int(os.getenv("SUGGESTION_LIMIT", "10"))

# Highlight extraction
MIN_CLIP_SECONDS = 15
MAX_CLIP_SECONDS = 90
TARGET_CLIP_SECONDS = 45
SILENCE_NOISE_DB = -30
SILENCE_MIN_DURATION = 0.5
