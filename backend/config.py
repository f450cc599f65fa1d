"""Configuration management for the LLM chat relay."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _get_int(name: str, default: int) -> int:
    """Read an integer setting, falling back to ``default`` when unset or malformed."""
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL") or None

# Server Configuration
PORT = _get_int("PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").lower()

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
MODEL = os.getenv("MODEL", "llama-3.1-8b-instant")
MAX_TOKENS = _get_int("MAX_TOKENS", 1024)
REQUEST_TIMEOUT = _get_int("REQUEST_TIMEOUT", 60)  # seconds

# Conversation Configuration
MAX_EXCHANGES = _get_int("MAX_EXCHANGES", 20)  # <= 0 keeps everything

# Token Cache Configuration
CACHE_ENABLED = _get_bool("CACHE_ENABLED", True)
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
TOKEN_CACHE_TTL = _get_int("TOKEN_CACHE_TTL", 24 * 60 * 60)  # seconds
TOKENIZER_ENCODING = os.getenv("TOKENIZER_ENCODING", "cl100k_base")

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
