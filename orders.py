"""
Checkout and order lifecycle.

Orders are receipts: the submitted cart lines and the client total are stored
as-is. The total is computed from the lines only when the client omits it, and
prices are never re-read from the live catalog.
"""
from decimal import Decimal
from typing import Iterable

import structlog

from database import Storage
from errors import FeatureNotImplemented, NotFound, ValidationError
from schemas import Order, OrderCreate, OrderItem

logger = structlog.get_logger(__name__)


def cart_total(items: Iterable[OrderItem]) -> str:
    total = sum((Decimal(i.price) * i.quantity for i in items), Decimal("0"))
    return str(total.quantize(Decimal("0.01")))


def resolve_shipping_address(storage: Storage, user_id: str, body: OrderCreate) -> str:
    if body.address_id:
        address = storage.get_address(body.address_id)
        if address is None or address.user_id != user_id:
            raise NotFound("Address not found")
        return address.as_text()
    if body.shipping_address:
        return body.shipping_address.strip()
    raise ValidationError("shippingAddress: Shipping address is required")


def place_order(storage: Storage, user_id: str, body: OrderCreate) -> Order:
    if not body.items:
        raise ValidationError("items: Order items are required")

    shipping_address = resolve_shipping_address(storage, user_id, body)
    # a supplied total is trusted as-is; only its format was checked
    total = body.total_amount if body.total_amount is not None else cart_total(body.items)

    order = storage.create_order(
        user_id=user_id,
        items=body.items,
        total_amount=total,
        shipping_address=shipping_address,
        address_id=body.address_id,
    )
    logger.info("order_created", order_id=order.id, user_id=user_id, total=total, lines=len(order.items))
    return order


def update_order_status(storage: Storage, order_id: str, status: str) -> Order:
    # Any status may follow any other; there is no transition graph.
    order = storage.update_order_status(order_id, status)
    if order is None:
        raise NotFound("Order not found")
    logger.info("order_status_changed", order_id=order_id, status=status)
    return order


def get_visible_order(storage: Storage, order_id: str, user_id: str, is_admin: bool) -> Order:
    order = storage.get_order(order_id)
    if order is None or (order.user_id != user_id and not is_admin):
        raise NotFound("Order not found")
    return order


def create_payment_intent():
    # TODO: wire a payment gateway (Stripe or Razorpay) and mark paymentStatus on capture
    raise FeatureNotImplemented(
        "Payment integration not yet implemented. Please add Stripe/Razorpay API keys."
    )
