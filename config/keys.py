"""
FANTASY EXCHANGE: KV key namespaces

Versioned prefixes so a format change never reads stale cached shapes.
"""


def market_hour_key(hour_key: str) -> str:
    return f"fx:market:v2:hour:{hour_key}"


def market_hour_lock_key(hour_key: str) -> str:
    return f"fx:lock:market:v2:hour:{hour_key}"


def player_account_key(player_id: str) -> str:
    return f"fx:acct:{player_id}"


def leaderboard_key(hour_key: str) -> str:
    return f"fx:lb:{hour_key}"


def profile_key_for(mode: str, game_id: str, date_key: str = "") -> str:
    """Daily profiles are keyed by date, random ones by their uuid."""
    if mode == "daily":
        return f"pg:profile:v1:daily:{date_key or game_id}"
    return f"pg:profile:v1:random:{game_id}"


def profile_lock_key_for(mode: str, game_id: str, date_key: str = "") -> str:
    return profile_key_for(mode, game_id, date_key).replace("pg:profile:", "pg:lock:profile:", 1)


def kv_test_key(hour_bucket: str) -> str:
    return f"fx:debug:kv-test:{hour_bucket}"


def delisting_history_key(ticker: str) -> str:
    """Every delisting a ticker has had, oldest first."""
    return f"fx:delisted:{ticker}"
