from .enums import Stage, PIPELINE, MovementDirection, MovementReason, ORDER_REASONS, StatusLogKind
from .inventory import Product, StockMovement, ImmutableRowError
from .orders import Order, OrderItem, ShipmentVolume, MARKER_PREFIXES
from .progress import SeparationProgress, VerificationProgress
from .history import OrderStatusLog

__all__ = [
    'Stage', 'PIPELINE', 'MovementDirection', 'MovementReason', 'ORDER_REASONS', 'StatusLogKind',
    'Product', 'StockMovement', 'ImmutableRowError',
    'Order', 'OrderItem', 'ShipmentVolume', 'MARKER_PREFIXES',
    'SeparationProgress', 'VerificationProgress',
    'OrderStatusLog',
]
