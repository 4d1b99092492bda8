# /bookmark/config.py
"""
Centralized configuration for the Bookmark reading companion.
Includes model catalogue names, paths, chunking, retrieval and voice tuning.
"""
import functools
import logging
import os
import shutil
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return bool(default) if raw is None else raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default, minimum, cast):
    """Reads a numeric setting; unparsable values fall back to the default."""
    try:
        value = cast(os.getenv(name, default))
    except (TypeError, ValueError):
        value = cast(default)
    return max(cast(minimum), value)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    return _env_number(name, default, minimum, int)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    return _env_number(name, default, minimum, float)


# ==============================================================================
# EXTERNAL BINARIES
# ==============================================================================
@functools.cache
def find_binary(name: str, env_name: str) -> str | None:
    """Resolves a helper executable from the environment or PATH, once per process."""
    configured = os.getenv(env_name)
    if configured:
        return configured
    return shutil.which(name)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Names ---
TRANSCRIPTION_MODEL_NAME = os.getenv("TRANSCRIPTION_MODEL_NAME", "whisper-tiny")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "all-MiniLM-L6-v2")
GENERATION_MODEL_NAME = os.getenv("GENERATION_MODEL_NAME", "mistral-7b-instruct-q4")
SYNTHESIS_MODEL_NAME = os.getenv("SYNTHESIS_MODEL_NAME", "en-us-amy")

# Hugging Face repository backing the embedding capability.
EMBEDDING_REPO_ID = os.getenv("EMBEDDING_REPO_ID", "sentence-transformers/all-MiniLM-L6-v2")
# "llama_cpp" serves the downloaded GGUF file, "ollama" defers to a local Ollama daemon.
GENERATION_BACKEND = os.getenv("GENERATION_BACKEND", "llama_cpp").strip().lower()
OLLAMA_MODEL_NAME = os.getenv("OLLAMA_MODEL_NAME", "mistral:7b-instruct")

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/bookmark/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("BOOKMARK_DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "bookmark.sqlite")))
MODELS_DIR = Path(os.getenv("MODELS_DIR", str(DATA_DIR / "models")))
INDEX_DIR = Path(os.getenv("INDEX_DIR", str(DATA_DIR / "indices")))
LIBRARY_DIR = Path(os.getenv("LIBRARY_DIR", str(DATA_DIR / "library")))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(DATA_DIR / "runtime_cache")))

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 512, minimum=16)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 50, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 4)

# --- Retrieval / Prompt Tuning ---
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 3, minimum=1)
HISTORY_TURNS = _env_int("HISTORY_TURNS", 4, minimum=0)
INDEX_VERSIONS_KEPT = _env_int("INDEX_VERSIONS_KEPT", 2, minimum=1)
CONTEXT_WINDOW = _env_int("CONTEXT_WINDOW", 2048, minimum=256)
GENERATION_MAX_TOKENS = _env_int("GENERATION_MAX_TOKENS", 512, minimum=16)
if GENERATION_MAX_TOKENS >= CONTEXT_WINDOW:
    GENERATION_MAX_TOKENS = CONTEXT_WINDOW // 4
GENERATION_TEMPERATURE = _env_float("GENERATION_TEMPERATURE", 0.7, minimum=0.0)
GENERATION_TOP_P = min(1.0, _env_float("GENERATION_TOP_P", 0.95, minimum=0.01))

# --- Voice Tuning ---
VOICE_SAMPLE_RATE = _env_int("VOICE_SAMPLE_RATE", 16000, minimum=8000)
VOICE_SEGMENT_SECONDS = _env_float("VOICE_SEGMENT_SECONDS", 2.0, minimum=0.5)
VOICE_LANGUAGE = os.getenv("VOICE_LANGUAGE", "en")

# --- llama.cpp Server ---
LLAMA_SERVER_URL = os.getenv("LLAMA_SERVER_URL", "http://127.0.0.1:8089")
LLAMA_GPU_LAYERS = _env_int("LLAMA_GPU_LAYERS", 0, minimum=0)
LLAMA_STARTUP_TIMEOUT_S = _env_float("LLAMA_STARTUP_TIMEOUT_S", 120.0, minimum=1.0)
LLAMA_REQUEST_TIMEOUT_S = _env_float("LLAMA_REQUEST_TIMEOUT_S", 300.0, minimum=1.0)

# --- Download Tuning ---
DOWNLOAD_CHUNK_BYTES = _env_int("DOWNLOAD_CHUNK_BYTES", 1 << 20, minimum=4096)
DOWNLOAD_TIMEOUT_S = _env_float("DOWNLOAD_TIMEOUT_S", 60.0, minimum=1.0)
METRICS_ENABLED = _env_bool("METRICS_ENABLED", True)

# --- Create necessary directories ---
for _directory in (DATA_DIR, MODELS_DIR, INDEX_DIR, LIBRARY_DIR, CACHE_DIR):
    _directory.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "bookmark.log")))
LOG_LEVEL = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").strip().upper())
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO
configure_logging(LOG_PATH, LOG_LEVEL)

# --- Optional Extras ---
# PyMuPDF ships in the "pdf" extra; without it only plain-text books import.
try:
    import fitz
    PDF_SUPPORT = True
except ImportError:
    PDF_SUPPORT = False
