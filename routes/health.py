from flask import Blueprint, current_app, jsonify

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    sweeper = current_app.extensions.get("expiry_sweeper")
    return jsonify(
        status="ok",
        sweeper_running=bool(sweeper and sweeper.running),
    ), 200
