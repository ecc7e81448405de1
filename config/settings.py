"""
FANTASY EXCHANGE: Configuration & LLM Routing

Runic Index (hourly fantasy stock market) and Pearly Gates (soul judgment)
share one LLM model, one KV store, and the constants below.
Everything is env-driven; .env is loaded once at import.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent.parent


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# LLM ROUTING
#
# Text: any OpenAI-compatible chat model (structured JSON prompts).
# Images: Gemini image model via google-genai (portraits, logos).
# Both are best-effort upstreams; callers decide how to degrade.
# ============================================================

class LLMConfig:

    # --- Model Selection ---
    MODEL = os.getenv("FANTASY_EXCHANGE_MODEL_ID", "gpt-5.2-2025-12-11")
    IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL_ID", "gemini-2.5-flash-image")

    # --- Per-Call Routing ---
    # Market output is large (25 companies + news), so it gets room to avoid truncated JSON.
    # The market call runs under the hour lock: one attempt, finished before LOCK_TTL_SECONDS.
    CALLS = {
        "market":  {"max_tokens": 5200, "json": True, "timeout": 45.0, "max_retries": 0},
        "profile": {"max_tokens": 1400, "json": True},
        "soul":    {"max_tokens": 400,  "json": True},
        "god":     {"max_tokens": 650,  "json": True},
    }

    # --- SDK resilience ---
    MAX_RETRIES = int(os.getenv("OPENAI_MAX_RETRIES", "2"))
    TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "120"))

    @classmethod
    def get_config(cls, call_key: str) -> dict:
        """Return the call config, with a conservative default for unknown keys."""
        return cls.CALLS.get(call_key, {"max_tokens": 800, "json": True})

    @classmethod
    def reasoning_kwargs(cls, model: str = None) -> dict:
        """Extra completion params for reasoning-family models (gpt-5*)."""
        model = model or cls.MODEL
        if not model.startswith("gpt-5"):
            return {}
        effort = "none" if model.startswith("gpt-5.2") else "minimal"
        return {"reasoning_effort": effort, "verbosity": "low"}

    @staticmethod
    def has_openai_key() -> bool:
        return bool(os.getenv("OPENAI_API_KEY"))

    @staticmethod
    def has_gemini_key() -> bool:
        return bool(os.getenv("GEMINI_API_KEY"))


# ============================================================
# Runic Index: Market Rules
# ============================================================

class MarketConfig:
    COMPANY_COUNT = 25
    MAX_DELISTINGS_PER_HOUR = 1

    # Starting band for NEW listings (first hour a ticker appears)
    LISTING_START_PRICE_MIN = 0.25
    LISTING_START_PRICE_MAX = 25.0

    # Existing tickers drift freely inside this range
    MIN_PRICE = 0.01
    MAX_PRICE = 999999.0

    MIN_DISTINCT_PRICES = 6
    MAX_BIG_NEWS = 6
    TICKER_PATTERN = r"^[A-Z]{3,6}$"

    MARKET_TTL_SECONDS = 60 * 60 * 24 * 14        # 14 days
    DELIST_HISTORY_TTL_SECONDS = 60 * 60 * 24 * 30  # matches the idle-account TTL
    LOCK_TTL_SECONDS = 55
    LOCK_WAIT_SECONDS = float(os.getenv("MARKET_LOCK_WAIT_SECONDS", "25"))
    LOCK_POLL_INITIAL = 0.25
    LOCK_POLL_MAX = 2.0

    # "delta": model updates existing tickers; "full": model re-emits all 25
    GENERATION_MODE = os.getenv("MARKET_GENERATION_MODE", "delta").strip().lower()
    PREV_LOOKBACK_HOURS = int(os.getenv("MARKET_PREV_LOOKBACK_HOURS", "24"))

    IMAGES_ENABLED = _env_bool("MARKET_IMAGES_ENABLED", "false")


class AccountConfig:
    STARTING_CASH = 100.0
    MAX_COMMAND_CHARS = 64
    MAX_TRADE_QTY = 1_000_000
    ACCOUNT_TTL_SECONDS = 60 * 60 * 24 * 30      # 30 days since last write
    LEADERBOARD_TTL_SECONDS = 60 * 60 * 24 * 7
    LEADERBOARD_SIZE = 10


# ============================================================
# Pearly Gates: Game Rules
# ============================================================

class GameConfig:
    MAX_QUESTIONS = 5
    MAX_QUESTION_CHARS = 140
    DAILY_PROFILE_TTL_SECONDS = 60 * 60 * 24 * 3
    RANDOM_PROFILE_TTL_SECONDS = 60 * 60 * 24
    PROFILE_LOCK_TTL_SECONDS = 45
    PROFILE_LOCK_WAIT_SECONDS = float(os.getenv("PROFILE_LOCK_WAIT_SECONDS", "20"))


# ============================================================
# Storage / Service
# ============================================================

class StorageConfig:
    """Backends are detected per call so tests (and redeploys) can flip env."""

    @staticmethod
    def kv_rest_url() -> str:
        return os.getenv("KV_REST_API_URL", "").rstrip("/")

    @staticmethod
    def kv_rest_token() -> str:
        return os.getenv("KV_REST_API_TOKEN", "")

    @staticmethod
    def redis_url() -> str:
        return os.getenv("REDIS_URL", "")

    KV_REST_TIMEOUT = 10.0
    DEBUG_KV_TEST_TTL_SECONDS = 120


class ServiceConfig:
    DEBUG_ROUTES_ENABLED = _env_bool("DEBUG_ROUTES_ENABLED", "true")
    PORT = int(os.getenv("PORT", "5000"))
    FLASK_DEBUG = _env_bool("FLASK_DEBUG", "false")
