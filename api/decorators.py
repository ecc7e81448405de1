"""
FANTASY EXCHANGE: API Decorators

Error mapping for every JSON route, plus the debug-route gate.
Domain modules raise typed exceptions; this is the only place they become
HTTP status codes.
"""

import logging
from functools import wraps

from flask import jsonify, request

from config.settings import ServiceConfig
from tools.market_engine import MarketBusyError, MarketGenerationError
from tools.pearly_gates import GameGenerationError, GameNotFoundError, ProfileBusyError

logger = logging.getLogger("fantasyx.api")


def json_body() -> dict:
    """Request JSON as a dict; anything else reads as empty."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def body_str(body: dict, name: str) -> str:
    value = body.get(name)
    return str(value).strip() if value is not None else ""


def api_errors(f):
    """Translate domain exceptions into JSON error responses."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except GameNotFoundError as e:
            return jsonify({"error": str(e) or "Game not found"}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except (MarketBusyError, ProfileBusyError) as e:
            logger.info(f"{request.path}: busy ({e})")
            return jsonify({"error": str(e)}), 503
        except (MarketGenerationError, GameGenerationError) as e:
            logger.error(f"{request.path}: {e}")
            return jsonify({"error": str(e), "raw": e.raw}), 500
    return decorated


def debug_only(f):
    """404 unless DEBUG_ROUTES_ENABLED."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not ServiceConfig.DEBUG_ROUTES_ENABLED:
            return jsonify({"error": "Not found"}), 404
        return f(*args, **kwargs)
    return decorated
