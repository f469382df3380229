# Overview: Maps service-layer exceptions to JSON error responses shared by the API blueprints.

from flask import current_app, jsonify

from ..services.concurrency import ConcurrencyConflict
from ..services.fulfillment_service import PreconditionNotMet, TransitionError
from ..services.order_service import OrderEditError, OrderNotFound
from ..services.progress_service import ProgressError
from ..services.stock_ledger_service import InsufficientStock, StockLedgerError


DOMAIN_ERRORS = (
    OrderNotFound,
    PreconditionNotMet,
    InsufficientStock,
    ConcurrencyConflict,
    TransitionError,
    ProgressError,
    OrderEditError,
    StockLedgerError,
)


def domain_error_response(exc: Exception):
    """
    404 unknown order, 409 guard/stock/race failures, 400 rejected requests.
    """
    if isinstance(exc, OrderNotFound):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, PreconditionNotMet):
        return jsonify({"error": str(exc), "guard": exc.guard, "details": exc.details}), 409
    if isinstance(exc, InsufficientStock):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, ConcurrencyConflict):
        return jsonify({"error": str(exc)}), 409
    return jsonify({"error": str(exc)}), 400


def internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500
