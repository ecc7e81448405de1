"""
FANTASY EXCHANGE: KV Storage Layer

Three-mode: managed KV (Upstash/Vercel REST) for production, raw Redis when only
a REDIS_URL is provided, in-memory map for local dev.
Auto-detects from environment on every call.

Usage:
    from config.storage import kv_get_json, kv_set_json, kv_try_acquire_lock

    state = kv_get_json("fx:market:v2:hour:2026-02-02T18")
    kv_set_json("fx:acct:p1", account, ex_seconds=3600)

    token = kv_try_acquire_lock("fx:lock:...", ttl_seconds=55)
    if token is None:
        state = kv_wait_for_json("fx:market:...", timeout=25)

No transactions and no eviction policy: TTL is the only expiry. Remote failures
are logged and the call falls back to the in-memory map, which is single-process
and non-durable.
"""

import json
import logging
import secrets
import threading
import time
from typing import Any, Optional

import httpx
import redis

from config.settings import StorageConfig

logger = logging.getLogger("fantasyx.storage")


class KVBackendError(RuntimeError):
    """Managed KV answered with an error payload."""


_REMOTE_ERRORS = (httpx.HTTPError, redis.RedisError, KVBackendError, OSError, ValueError)

# ── Backend detection ──

def _has_managed_kv() -> bool:
    return bool(StorageConfig.kv_rest_url() and StorageConfig.kv_rest_token())


def _has_redis_url() -> bool:
    return bool(StorageConfig.redis_url())


def active_backend() -> str:
    """Which backend a call made right now would try first."""
    if _has_managed_kv():
        return "kv"
    if _has_redis_url():
        return "redis"
    return "memory"


# ═══════════════════════════════════════════════════════════════
# Managed KV (REST command API)
# ═══════════════════════════════════════════════════════════════

def _kv_command(*args) -> Any:
    """POST a single Redis command as a JSON array; returns `result`."""
    resp = httpx.post(
        StorageConfig.kv_rest_url(),
        headers={"Authorization": f"Bearer {StorageConfig.kv_rest_token()}"},
        json=[str(a) for a in args],
        timeout=StorageConfig.KV_REST_TIMEOUT,
    )
    resp.raise_for_status()
    data = resp.json()
    if isinstance(data, dict) and data.get("error"):
        raise KVBackendError(str(data["error"]))
    return data.get("result") if isinstance(data, dict) else None


# ═══════════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════════

_redis_conn = None
_redis_conn_url = ""


def get_redis():
    """Get or create the Redis connection for the current REDIS_URL."""
    global _redis_conn, _redis_conn_url
    url = StorageConfig.redis_url()
    if _redis_conn is None or _redis_conn_url != url:
        conn = redis.from_url(url, decode_responses=True)
        conn.ping()
        _redis_conn, _redis_conn_url = conn, url
        logger.info("Redis connected")
    return _redis_conn


def reset_clients() -> None:
    """Drop the cached Redis connection (tests, URL rotation)."""
    global _redis_conn, _redis_conn_url
    _redis_conn, _redis_conn_url = None, ""


# ═══════════════════════════════════════════════════════════════
# In-memory fallback (dev only)
# ═══════════════════════════════════════════════════════════════

_memory_store: dict = {}       # key → (raw_json, expires_at_epoch | None)
_memory_lock = threading.Lock()


def _mem_get(key: str) -> Optional[str]:
    with _memory_lock:
        entry = _memory_store.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and time.time() > expires_at:
            _memory_store.pop(key, None)
            return None
        return raw


def _mem_set(key: str, raw: str, ex_seconds: Optional[int] = None, nx: bool = False) -> bool:
    with _memory_lock:
        if nx:
            entry = _memory_store.get(key)
            if entry is not None and (entry[1] is None or time.time() <= entry[1]):
                return False
        expires_at = time.time() + ex_seconds if ex_seconds else None
        _memory_store[key] = (raw, expires_at)
        return True


def _mem_delete(key: str) -> None:
    with _memory_lock:
        _memory_store.pop(key, None)


def reset_memory_store() -> None:
    with _memory_lock:
        _memory_store.clear()


# ═══════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════

def kv_get_raw(key: str) -> Optional[str]:
    """Return the stored JSON text for a key, or None."""
    if _has_managed_kv():
        try:
            result = _kv_command("GET", key)
            if result is None:
                return None
            # Some KV clients store JSON values directly; normalize to text
            return result if isinstance(result, str) else json.dumps(result)
        except _REMOTE_ERRORS as e:
            logger.warning(f"KV REST get failed for {key}, falling back to memory: {e}")
    elif _has_redis_url():
        try:
            return get_redis().get(key)
        except _REMOTE_ERRORS as e:
            logger.warning(f"Redis get failed for {key}, falling back to memory: {e}")
    return _mem_get(key)


def kv_set_raw(key: str, raw: str, ex_seconds: Optional[int] = None, nx: bool = False) -> bool:
    """Write text. With nx=True only an absent key is written; returns whether it was."""
    if _has_managed_kv():
        try:
            cmd = ["SET", key, raw]
            if nx:
                cmd.append("NX")
            if ex_seconds:
                cmd += ["EX", int(ex_seconds)]
            res = _kv_command(*cmd)
            return bool(res) if nx else True
        except _REMOTE_ERRORS as e:
            logger.warning(f"KV REST set failed for {key}, falling back to memory: {e}")
    elif _has_redis_url():
        try:
            ex = int(ex_seconds) if ex_seconds else None
            if nx:
                return bool(get_redis().set(key, raw, nx=True, ex=ex))
            get_redis().set(key, raw, ex=ex)
            return True
        except _REMOTE_ERRORS as e:
            logger.warning(f"Redis set failed for {key}, falling back to memory: {e}")
    return _mem_set(key, raw, ex_seconds, nx=nx)


def kv_get_json(key: str) -> Optional[Any]:
    """Decoded JSON value, or None when missing, expired, or undecodable."""
    raw = kv_get_raw(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.debug(f"Undecodable value at {key}")
        return None


def kv_set_json(key: str, value: Any, ex_seconds: Optional[int] = None) -> str:
    """Store a JSON-encoded value. Returns the exact text written."""
    raw = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    kv_set_raw(key, raw, ex_seconds)
    return raw


def kv_set_json_if_absent(key: str, value: Any, ex_seconds: Optional[int] = None) -> Optional[str]:
    """SET NX variant of kv_set_json. Returns the text written, or None if the key already existed."""
    raw = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return raw if kv_set_raw(key, raw, ex_seconds, nx=True) else None


def kv_delete(key: str) -> None:
    if _has_managed_kv():
        try:
            _kv_command("DEL", key)
            return
        except _REMOTE_ERRORS as e:
            logger.warning(f"KV REST delete failed for {key}: {e}")
    elif _has_redis_url():
        try:
            get_redis().delete(key)
            return
        except _REMOTE_ERRORS as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
    _mem_delete(key)


def kv_try_acquire_lock(key: str, ttl_seconds: int) -> Optional[str]:
    """Best-effort distributed lock: one SET NX EX.

    Returns a token if acquired, else None. No renewal and no fencing;
    a crashed holder simply lets the TTL expire.
    """
    token = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"
    return token if kv_set_raw(key, token, ttl_seconds, nx=True) else None


def kv_wait_for_json(key: str, timeout: float, initial_delay: float = 0.25,
                     max_delay: float = 2.0) -> Optional[Any]:
    """Poll a key with exponential backoff until it appears or `timeout` seconds of sleep elapse."""
    waited = 0.0
    delay = initial_delay
    while True:
        value = kv_get_json(key)
        if value is not None:
            return value
        if waited >= timeout:
            return None
        pause = min(delay, timeout - waited)
        time.sleep(pause)
        waited += pause
        delay = min(delay * 2, max_delay)
