"""
FANTASY EXCHANGE: Storage diagnostics

Answers "which KV is this deployment actually talking to?" without leaking
credentials: URLs lose their userinfo/query, tokens keep three chars per end.
"""

import os
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

from flask import jsonify

from api import api_bp
from api.decorators import debug_only
from config.keys import kv_test_key, market_hour_key
from config.settings import StorageConfig
from config.storage import active_backend, kv_get_json, kv_set_json
from tools.hour_key import utc_hour_key
from tools.market_models import now_ms


def redact_url(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    parts = urlsplit(value)
    if parts.scheme and parts.hostname:
        host = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
        return f"{parts.scheme}://{host}{parts.path}"
    return "[set]" if len(value) <= 12 else f"{value[:6]}…{value[-4:]}"


def redact_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if len(value) <= 8:
        return "[set]"
    return f"{value[:3]}…{value[-3:]}"


@api_bp.route("/debug/storage", methods=["GET"])
@debug_only
def debug_storage():
    hour_key = utc_hour_key()
    kv_url = os.getenv("KV_REST_API_URL")
    kv_token = os.getenv("KV_REST_API_TOKEN")
    return jsonify({
        "ok": True,
        "now": datetime.now(timezone.utc).isoformat(),
        "hourKey": hour_key,
        "marketKey": market_hour_key(hour_key),
        "backend": active_backend(),
        "env": {
            "hasKV": bool(kv_url and kv_token),
            "hasRedisUrl": bool(StorageConfig.redis_url()),
            "KV_REST_API_URL": redact_url(kv_url),
            "KV_REST_API_TOKEN": redact_token(kv_token),
            "REDIS_URL": redact_url(os.getenv("REDIS_URL")),
        },
    })


@api_bp.route("/debug/kv-test", methods=["GET"])
@debug_only
def debug_kv_test():
    key = kv_test_key(utc_hour_key())
    kv_set_json(key, {"ok": True, "at": now_ms()}, ex_seconds=StorageConfig.DEBUG_KV_TEST_TTL_SECONDS)
    read_back = kv_get_json(key)
    return jsonify({
        "ok": True,
        "wrote": True,
        "readBack": read_back is not None,
        "value": read_back,
        "key": key,
        "backend": active_backend(),
    })
