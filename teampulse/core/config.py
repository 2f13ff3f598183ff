"""
Configuration for the negotiation analysis service.

Values come from the environment (and a local .env file when present).
Components take these as explicit constructor arguments, so tests build
them directly without touching the environment.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")


class Config:
    # LLM Settings
    LLM_MODEL = os.getenv("OLLAMA_MODEL", "gpt-oss:20b-cloud")
    LLM_BASE_URL = os.getenv("OLLAMA_BASE_URL", "https://ollama.com")
    LLM_API_KEY = os.getenv("OLLAMA_API_KEY")
    LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.2)
    LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 2000)
    LLM_TIMEOUT_SECONDS = _env_float("LLM_TIMEOUT_SECONDS", 60.0)
    SUMMARY_WITH_LLM = _env_bool("SUMMARY_WITH_LLM", True)

    # Budget
    DAILY_TOKEN_LIMIT = _env_int("DAILY_TOKEN_LIMIT", 512000)
    MAX_HIGHLIGHTS_PER_1000_WORDS = _env_int("MAX_HIGHLIGHTS_PER_1000_WORDS", 12)

    # Chunking / dispatch
    CHUNK_SIZE_CHARS = _env_int("CHUNK_SIZE_CHARS", 6000)
    CHUNK_OVERLAP_CHARS = _env_int("CHUNK_OVERLAP_CHARS", 400)
    MAX_CONCURRENT_CHUNKS = _env_int("MAX_CONCURRENT_CHUNKS", 4)

    # Input limits
    MIN_TEXT_CHARS = _env_int("MIN_TEXT_CHARS", 20)
    MAX_TEXT_CHARS = _env_int("MAX_TEXT_CHARS", 100000)

    # Storage / API
    DATABASE_URL = os.getenv("DATABASE_URL")
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


config = Config()
