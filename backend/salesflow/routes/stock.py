# Overview: Flask API routes for the stock ledger and its integrity audit.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_actor, require_privileged
from ..services import reconciliation_service, stock_ledger_service
from .responses import DOMAIN_ERRORS, domain_error_response, internal_error


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/movements")
@require_actor
def list_movements_route():
    """Stock history, newest first. Filters: product_id, reference_id, limit."""
    product_id = request.args.get("product_id", type=int)
    reference_id = request.args.get("reference_id")
    limit = request.args.get("limit", default=200, type=int)

    movements = stock_ledger_service.list_movements(
        product_id=product_id,
        reference_id=reference_id,
        limit=limit,
    )
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@stock_bp.post("/products/<int:product_id>/adjust")
@require_actor
def adjust_stock_route(product_id: int):
    """Body: {"new_stock": <counted quantity>, "notes"?}"""
    try:
        data = request.get_json() or {}
        if data.get("new_stock") is None:
            return jsonify({"error": "new_stock required"}), 400

        movement = stock_ledger_service.adjust_stock_to(
            product_id,
            data["new_stock"],
            g.actor.actor_id,
            notes=data.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to adjust stock")


@stock_bp.post("/entries")
@require_actor
def stock_entry_route():
    """
    Receive goods.

    Body: {"product_id", "quantity", "notes"?} for one product, or
          {"entries": [{"product_id", "quantity", "notes"?}, ...]} for a bulk entry.
    """
    try:
        data = request.get_json() or {}
        if "entries" in data:
            movements = stock_ledger_service.receive_stock_bulk(data["entries"], g.actor.actor_id)
            return jsonify({"movements": [m.to_dict() for m in movements]}), 201

        if data.get("product_id") is None or data.get("quantity") is None:
            return jsonify({"error": "product_id and quantity required"}), 400

        movement = stock_ledger_service.receive_stock(
            data["product_id"],
            data["quantity"],
            g.actor.actor_id,
            notes=data.get("notes"),
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to record stock entry")


@stock_bp.get("/integrity")
@require_actor
def integrity_report_route():
    rows = reconciliation_service.compute_integrity()
    return jsonify({"products": [row.to_dict() for row in rows]}), 200


@stock_bp.post("/integrity/clean-orphans")
@require_actor
@require_privileged
def clean_orphans_route():
    """Delete orphaned movements, then return the cleanup totals and a fresh audit."""
    try:
        result = reconciliation_service.clean_orphaned_movements()
        rows = reconciliation_service.compute_integrity()
        return jsonify({
            "cleanup": result.to_dict(),
            "products": [row.to_dict() for row in rows],
        }), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to clean orphaned movements")


@stock_bp.post("/products/<int:product_id>/align")
@require_actor
@require_privileged
def align_stock_route(product_id: int):
    """Body: {"justification": "..."}"""
    try:
        data = request.get_json() or {}
        result = reconciliation_service.align_stock_to_ledger(
            product_id,
            g.actor.actor_id,
            data.get("justification"),
        )
        return jsonify(result), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to align stock")
