"""
FANTASY EXCHANGE: JSON API

Flask blueprint: /api/*
    market/state, trade/execute, account/get, account/reset, leaderboard
    game/start, game/ask, game/judge
    debug/storage, debug/kv-test
"""

from flask import Blueprint

api_bp = Blueprint("api", __name__, url_prefix="/api")

from api import market_routes  # noqa: E402, F401
from api import game_routes  # noqa: E402, F401
from api import debug_routes  # noqa: E402, F401
