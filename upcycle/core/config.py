"""
Runtime configuration for the generation cache and embedding-search pipeline.
Everything is read from the environment (a local .env file is honoured).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Storage locations
DB_PATH = os.getenv("DB_PATH", "./data/upcycle.db")
VECTOR_INDEX_PATH = os.getenv("VECTOR_INDEX_PATH", "./data/faiss.index")
VECTOR_MAPPING_PATH = os.getenv("VECTOR_MAPPING_PATH", "./data/faiss_mapping.json")

# Embedding configuration
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "sentence_transformers")  # sentence_transformers|hash
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")

# Generation backend
GENERATION_PROVIDER = os.getenv("GENERATION_PROVIDER", "ollama")  # ollama|mock
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://127.0.0.1:11434")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "qwen2.5:7b-instruct")
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.2"))
NAMES_MAX_TOKENS = int(os.getenv("NAMES_MAX_TOKENS", "300"))
DETAILS_MAX_TOKENS = int(os.getenv("DETAILS_MAX_TOKENS", "1500"))

# Matching policy
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.8"))
MIN_MATCHES = int(os.getenv("MIN_MATCHES", "3"))
SEARCH_TOP_K = int(os.getenv("SEARCH_TOP_K", "10"))
MAX_CONFIDENT_RESULTS = int(os.getenv("MAX_CONFIDENT_RESULTS", "5"))

# Generation job policy
GENERATION_TIMEOUT_SEC = float(os.getenv("GENERATION_TIMEOUT_SEC", "180"))
GENERATION_MAX_RETRIES = int(os.getenv("GENERATION_MAX_RETRIES", "2"))
GENERATION_BACKOFF_SEC = float(os.getenv("GENERATION_BACKOFF_SEC", "3.0"))
STREAM_POLL_INTERVAL_SEC = float(os.getenv("STREAM_POLL_INTERVAL_SEC", "1.0"))

# Single admin role, shared-secret based
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")

VERSION = "1.0.0"

VALID_EMBED_PROVIDERS = ("sentence_transformers", "hash")
VALID_GENERATION_PROVIDERS = ("ollama", "mock")


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_admin_token():
    """Admin token is read on every call so it can be rotated without restart."""
    return os.getenv("ADMIN_TOKEN", ADMIN_TOKEN or "") or None


def ensure_data_directories():
    """Ensure the directories holding the database and index files exist."""
    for path in (DB_PATH, VECTOR_INDEX_PATH, VECTOR_MAPPING_PATH):
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if not 0.0 <= SIMILARITY_THRESHOLD <= 1.0:
        issues.append(f"SIMILARITY_THRESHOLD must be within [0, 1]: {SIMILARITY_THRESHOLD}")

    if MIN_MATCHES < 1:
        issues.append("MIN_MATCHES must be >= 1")

    if SEARCH_TOP_K < MIN_MATCHES:
        issues.append("SEARCH_TOP_K must be >= MIN_MATCHES")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if GENERATION_TIMEOUT_SEC <= 0:
        issues.append("GENERATION_TIMEOUT_SEC must be > 0")

    if GENERATION_MAX_RETRIES < 0:
        issues.append("GENERATION_MAX_RETRIES must be >= 0")

    if EMBED_PROVIDER not in VALID_EMBED_PROVIDERS:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if GENERATION_PROVIDER not in VALID_GENERATION_PROVIDERS:
        issues.append(f"Invalid GENERATION_PROVIDER: {GENERATION_PROVIDER}")

    return issues
