"""
Runtime configuration read from the environment (and a local .env file).
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# Get data directory from env or default to ./data
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
BLOB_DIR = Path(os.getenv("BLOB_DIR", str(DATA_DIR / "blobs")))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'cooccur.db'}")

UPLOADS_STORE = os.getenv("UPLOADS_STORE", "uploads")
OUTPUTS_STORE = os.getenv("OUTPUTS_STORE", "outputs")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
PROMPT_VERSION = os.getenv("PROMPT_VERSION", "v1.0")

LLM_MAX_CALLS_PER_JOB = _int_env("LLM_MAX_CALLS_PER_JOB", 50)
LLM_BATCH_SIZE = _int_env("LLM_BATCH_SIZE", 10)
LLM_CONCURRENCY = _int_env("LLM_CONCURRENCY", 2)
LLM_MAX_ATTEMPTS = _int_env("LLM_MAX_ATTEMPTS", 3)
LLM_COST_IN_CENTS_PER_1K = _float_env("LLM_COST_IN_CENTS_PER_1K", 0.0)
LLM_COST_OUT_CENTS_PER_1K = _float_env("LLM_COST_OUT_CENTS_PER_1K", 0.0)

STORE_MAX_ATTEMPTS = _int_env("STORE_MAX_ATTEMPTS", 3)
CACHE_TTL_DAYS = _int_env("CACHE_TTL_DAYS", 30)

APP_API_KEY = os.getenv("APP_API_KEY")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")

# Max length of the failure cause stored on a job
JOB_ERROR_MAX_LEN = 500
