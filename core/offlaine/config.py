"""Configuration settings for OfflAIne Core."""

import os
from pathlib import Path

# Paths
DATA_DIR = Path.home() / ".offlaine"
MODELS_DIR = DATA_DIR / "offlaine_models"
STATE_FILE = DATA_DIR / "state.json"
TEMP_DIR_NAME = ".temp"

# Server
HOST = "127.0.0.1"
PORT = 7879

# API
API_PREFIX = "/api"

# Downloads
MAX_CONCURRENT_DOWNLOADS = 2
INTEGRITY_TOLERANCE = 0.10  # +/- fraction of declared size
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB
DOWNLOAD_TIMEOUT = 30.0  # seconds, per read

# Storage optimization
STALE_AFTER_DAYS = 30
COMPRESSION_ESTIMATE_BYTES = 50 * 1024 * 1024  # Placeholder codec estimate

# Catalog
HUGGINGFACE_API_BASE = os.getenv("OFFLAINE_HF_ENDPOINT", "https://huggingface.co")
CATALOG_CACHE_SECONDS = 24 * 60 * 60

# Benchmark
THERMAL_WINDOW_SECONDS = 180.0
THERMAL_SAMPLE_INTERVAL = 10.0

# Resource monitor
MONITOR_INTERVAL_SECONDS = 2.0
MONITOR_HISTORY_CAPACITY = 1000

# Logging
LOG_LEVEL = os.getenv("OFFLAINE_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("OFFLAINE_LOG_FILE")  # Also log to this file when set
