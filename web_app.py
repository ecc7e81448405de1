"""
FANTASY EXCHANGE: Runic Index & Pearly Gates API server
"""
import logging
import os

# ── Structured logging ──
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("fantasyx")

# Quiet noisy libraries
for _noisy in ("httpx", "httpcore", "openai", "google_genai", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
load_dotenv()

from config.settings import LLMConfig, MarketConfig, ServiceConfig
from config.storage import active_backend

app = Flask(__name__)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.config["MAX_CONTENT_LENGTH"] = 256 * 1024  # game payloads are tiny
app.json.sort_keys = False

# ── Register JSON API Blueprint ──
from api import api_bp  # noqa: E402
app.register_blueprint(api_bp)
logger.info(f"Registered API blueprint at /api/ (mode={MarketConfig.GENERATION_MODE}, "
            f"model={LLMConfig.MODEL}, storage={active_backend()})")

if not LLMConfig.has_openai_key():
    logger.warning("OPENAI_API_KEY not set. Market hours past the seed and all Pearly Gates calls will fail.")


@app.route("/")
def index():
    return jsonify({
        "name": "Fantasy Exchange",
        "games": ["runic-index", "pearly-gates"],
        "api": sorted(str(r.rule) for r in app.url_map.iter_rules() if str(r.rule).startswith("/api/")),
    })


# ─── HEALTH CHECK (for load balancer monitoring) ───

@app.route("/health")
def health_check():
    """Health check: web server is up; reports which KV backend calls will use."""
    return jsonify({"status": "ok", "storage": active_backend()}), 200


# ─── JSON ERRORS ───

@app.errorhandler(404)
def error_404(e):
    if request.path.startswith("/api/"):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"error": "Not found", "path": request.path}), 404


@app.errorhandler(405)
def error_405(e):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def error_413(e):
    return jsonify({"error": f"Request body too large (max {app.config['MAX_CONTENT_LENGTH'] // 1024} KB)"}), 413


@app.errorhandler(500)
def error_500(e):
    logger.error(f"500 error on {request.path}: {e}", exc_info=True)
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    port = int(os.getenv("PORT", ServiceConfig.PORT))
    logger.info(f"FANTASY EXCHANGE: http://localhost:{port}")
    app.run(debug=ServiceConfig.FLASK_DEBUG, host="0.0.0.0", port=port)
