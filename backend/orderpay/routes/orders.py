# Overview: Flask API routes for orders; order detail and seller fulfillment events.

from flask import Blueprint, current_app

from ..errors import OrderNotFound, StorageFailure
from ..responses import envelope, error
from ..services import order_service, order_state_machine
from ..services.order_state_machine import EVENT_DELIVER, EVENT_SHIP


orders_bp = Blueprint("orders", __name__, url_prefix="/orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    """Order with lines, payments, stock movements and status history."""
    detail = order_service.get_order_detail(order_id)
    if detail is None:
        return error("Order not found", 404)
    return envelope(detail, "Order retrieved")


def _fulfillment(order_id: int, event: str):
    try:
        result = order_state_machine.transition(order_id, event)
        message = "Order updated" if result.applied else "Order not eligible, nothing changed"
        return envelope(result.to_dict(), message)
    except OrderNotFound as e:
        return error(str(e), 404)
    except StorageFailure:
        current_app.logger.exception("Failed to apply %s", event)
        return error("Storage failure", 503)
    except Exception:
        current_app.logger.exception("Failed to apply %s", event)
        return error("Internal server error", 500)


@orders_bp.post("/<int:order_id>/ship")
def ship_order_route(order_id: int):
    """Seller marks a paid order as shipped (processing -> shipped)."""
    return _fulfillment(order_id, EVENT_SHIP)


@orders_bp.post("/<int:order_id>/deliver")
def deliver_order_route(order_id: int):
    """Courier confirmation (shipped -> delivered); settlement sweep completes it later."""
    return _fulfillment(order_id, EVENT_DELIVER)
