# Overview: Flask API routes for picking and verification progress of order items.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_actor
from ..services import progress_service
from .responses import DOMAIN_ERRORS, domain_error_response, internal_error


progress_bp = Blueprint("progress", __name__, url_prefix="/api/orders/<int:order_id>/progress")


def _confirmed_quantity():
    data = request.get_json() or {}
    return data.get("confirmed_quantity")


@progress_bp.get("")
@require_actor
def progress_summary_route(order_id: int):
    try:
        return jsonify(progress_service.summarize_progress(order_id)), 200
    except DOMAIN_ERRORS as e:
        return domain_error_response(e)


@progress_bp.put("/separation/<int:item_id>")
@require_actor
def record_separation_route(order_id: int, item_id: int):
    try:
        confirmed = _confirmed_quantity()
        if confirmed is None:
            return jsonify({"error": "confirmed_quantity required"}), 400

        result = progress_service.record_separation(order_id, item_id, confirmed, g.actor.actor_id)
        return jsonify(result.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to record separation progress")


@progress_bp.delete("/separation/<int:item_id>")
@require_actor
def clear_separation_route(order_id: int, item_id: int):
    try:
        result = progress_service.clear_separation(order_id, item_id, g.actor.actor_id)
        return jsonify(result.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to clear separation progress")


@progress_bp.put("/verification/<int:item_id>")
@require_actor
def record_verification_route(order_id: int, item_id: int):
    try:
        confirmed = _confirmed_quantity()
        if confirmed is None:
            return jsonify({"error": "confirmed_quantity required"}), 400

        result = progress_service.record_verification(order_id, item_id, confirmed, g.actor.actor_id)
        return jsonify(result.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to record verification progress")


@progress_bp.get("/lookup")
@require_actor
def lookup_code_route(order_id: int):
    """Resolve a scanned code (?code=...) to an item of this order."""
    try:
        result = progress_service.lookup_item_by_code(order_id, request.args.get("code", ""))
        status = 200 if result.status == "found" else 404 if result.status == "not_found" else 409
        return jsonify(result.to_dict()), status

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
