# Overview: Flask API routes for orders and their stage transitions; parses input and returns JSON responses.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_actor, require_privileged
from ..services import fulfillment_service, history_service, order_service
from .responses import DOMAIN_ERRORS, domain_error_response, internal_error


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Convert an accepted quote into an order.

    Body: {"items": [{"product_id", "quantity", "unit_price_cents", "discount_cents"}],
           "budget_id"?, "notes"?}
    """
    try:
        data = request.get_json() or {}
        items = data.get("items")
        if not items:
            return jsonify({"error": "items required"}), 400

        order = order_service.create_order(
            g.actor.actor_id,
            items,
            budget_id=data.get("budget_id"),
            notes=data.get("notes"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to create order")


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.load_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return domain_error_response(e)


@orders_bp.delete("/<int:order_id>")
@require_actor
@require_privileged
def delete_order_route(order_id: int):
    """
    Delete an order. Stock is credited back unless ?restock=false.
    """
    try:
        restock = request.args.get("restock", "true").lower() not in ("false", "0", "no")
        result = order_service.delete_order(order_id, g.actor.actor_id, restock=restock)
        return jsonify(result), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to delete order")


@orders_bp.post("/<int:order_id>/items")
@require_actor
def add_item_route(order_id: int):
    try:
        data = request.get_json() or {}
        if data.get("product_id") is None or data.get("quantity") is None:
            return jsonify({"error": "product_id and quantity required"}), 400

        item = order_service.add_item(
            order_id,
            data["product_id"],
            data["quantity"],
            data.get("unit_price_cents", 0),
            g.actor.actor_id,
            discount_cents=data.get("discount_cents", 0),
        )
        return jsonify({"item": item.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to add order item")


@orders_bp.patch("/<int:order_id>/items/<int:item_id>")
@require_actor
def update_item_route(order_id: int, item_id: int):
    try:
        data = request.get_json() or {}
        if data.get("quantity") is None:
            return jsonify({"error": "quantity required"}), 400

        item = order_service.update_item_quantity(order_id, item_id, data["quantity"], g.actor.actor_id)
        return jsonify({"item": item.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to update order item")


@orders_bp.delete("/<int:order_id>/items/<int:item_id>")
@require_actor
def remove_item_route(order_id: int, item_id: int):
    try:
        order = order_service.remove_item(order_id, item_id, g.actor.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to remove order item")


@orders_bp.post("/<int:order_id>/separation/finalize")
@require_actor
def finalize_separation_route(order_id: int):
    try:
        order = fulfillment_service.finalize_separation(order_id, g.actor.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to finalize separation")


@orders_bp.post("/<int:order_id>/verification/finalize")
@require_actor
def finalize_verification_route(order_id: int):
    """
    Finish verification. A wrong count regresses the order to separation
    (200 with regressed=true); otherwise the order moves to invoicing.
    """
    try:
        data = request.get_json(silent=True) or {}
        outcome = fulfillment_service.finalize_verification(
            order_id,
            g.actor.actor_id,
            volume_weights_kg=data.get("volume_weights_kg"),
        )
        return jsonify(outcome.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to finalize verification")


@orders_bp.put("/<int:order_id>/volumes")
@require_actor
def record_volumes_route(order_id: int):
    try:
        data = request.get_json() or {}
        weights = data.get("weights_kg")
        if not isinstance(weights, list):
            return jsonify({"error": "weights_kg must be a list"}), 400

        order = fulfillment_service.record_shipment_volumes(order_id, weights, g.actor.actor_id)
        return jsonify({
            "order": order.to_dict(include_items=False),
            "volumes": [v.to_dict() for v in order.volumes],
        }), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to record shipment volumes")


@orders_bp.post("/<int:order_id>/invoice")
@require_actor
def confirm_invoice_route(order_id: int):
    try:
        data = request.get_json() or {}
        order = fulfillment_service.confirm_invoice(order_id, data.get("invoice_number"), g.actor.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to confirm invoice")


@orders_bp.post("/<int:order_id>/delivery")
@require_actor
def confirm_delivery_route(order_id: int):
    try:
        data = request.get_json() or {}
        order = fulfillment_service.confirm_delivery(order_id, data.get("delivery_note"), g.actor.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to confirm delivery")


@orders_bp.post("/<int:order_id>/override")
@require_actor
@require_privileged
def override_stage_route(order_id: int):
    """
    Force an order into another stage.

    Body: {"target_stage": "...", "justification": "..."}
    """
    try:
        data = request.get_json() or {}
        if not data.get("target_stage"):
            return jsonify({"error": "target_stage required"}), 400

        order = fulfillment_service.override_stage(
            order_id,
            data["target_stage"],
            g.actor,
            data.get("justification"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return domain_error_response(e)
    except Exception:
        return internal_error("Failed to override order stage")


@orders_bp.get("/<int:order_id>/history")
@require_actor
def order_history_route(order_id: int):
    """History entries oldest first, plus any entries the state machine could not have produced."""
    entries = history_service.list_for(order_id)
    violations = history_service.find_history_violations(order_id)
    return jsonify({
        "history": [entry.to_dict() for entry in entries],
        "violations": [v.to_dict() for v in violations],
    }), 200
