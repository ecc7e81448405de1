"""
FANTASY EXCHANGE: Runic Index routes

Every route snaps to the current UTC hour; trades and valuations use that
hour's cached prices.
"""

from flask import jsonify, request

from api import api_bp
from api.decorators import api_errors, body_str, json_body
from tools.accounts import (
    TradeError, compute_account_snapshot, execute_trade, get_or_create_account,
    record_net_worth, reset_account, save_account, settle_delistings, top_players,
)
from tools.hour_key import utc_hour_key
from tools.market_engine import get_or_create_market_hour


def _player_id(body: dict) -> str:
    player_id = body_str(body, "playerId")
    if not player_id:
        raise TradeError("Missing playerId")
    return player_id


@api_bp.route("/market/state", methods=["GET", "POST"])
@api_errors
def market_state():
    market = get_or_create_market_hour(utc_hour_key())
    return jsonify({"market": market.to_wire()})


@api_bp.route("/trade/execute", methods=["POST"])
@api_errors
def trade_execute():
    body = json_body()
    player_id = _player_id(body)
    command = body_str(body, "command")
    if not command:
        raise TradeError("Missing command")

    hour_key = utc_hour_key()
    market = get_or_create_market_hour(hour_key)
    account = get_or_create_account(player_id)
    settle_delistings(account, market)

    receipt = execute_trade(account, market, command, hour_key)
    record_net_worth(hour_key, player_id, receipt.account.net_worth)
    return jsonify(receipt.to_wire())


@api_bp.route("/account/get", methods=["POST"])
@api_errors
def account_get():
    player_id = _player_id(json_body())
    hour_key = utc_hour_key()
    market = get_or_create_market_hour(hour_key)

    account = get_or_create_account(player_id)
    if settle_delistings(account, market):
        save_account(account)
    snapshot = compute_account_snapshot(account, market)
    record_net_worth(hour_key, player_id, snapshot.net_worth)
    return jsonify({"ok": True, "account": snapshot.to_wire()})


@api_bp.route("/account/reset", methods=["POST"])
@api_errors
def account_reset():
    player_id = _player_id(json_body())
    market = get_or_create_market_hour(utc_hour_key())
    account = reset_account(player_id)
    return jsonify({"ok": True, "account": compute_account_snapshot(account, market).to_wire()})


@api_bp.route("/leaderboard", methods=["GET"])
@api_errors
def leaderboard():
    hour_key = utc_hour_key()
    limit = request.args.get("limit", type=int)
    return jsonify({"hourKey": hour_key, "entries": top_players(hour_key, limit)})
