"""
FANTASY EXCHANGE: Pearly Gates routes
"""

from flask import jsonify

from api import api_bp
from api.decorators import api_errors, body_str, json_body
from tools import pearly_gates


@api_bp.route("/game/start", methods=["POST"])
@api_errors
def game_start():
    body = json_body()
    return jsonify(pearly_gates.start_game(body.get("mode"), body_str(body, "dateKey")))


@api_bp.route("/game/ask", methods=["POST"])
@api_errors
def game_ask():
    body = json_body()
    return jsonify(pearly_gates.ask(
        body.get("mode"),
        body_str(body, "dateKey"),
        body_str(body, "gameId"),
        body_str(body, "question"),
        body.get("qaSoFar"),
    ))


@api_bp.route("/game/judge", methods=["POST"])
@api_errors
def game_judge():
    body = json_body()
    return jsonify(pearly_gates.judge(
        body.get("mode"),
        body_str(body, "dateKey"),
        body_str(body, "gameId"),
        body_str(body, "judgment"),
        body.get("qa"),
    ))
