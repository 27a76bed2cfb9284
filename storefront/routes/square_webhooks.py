"""
Square Webhook Handler
Verifies the signature over the raw body, then refreshes cached booking and
order statuses. Once a webhook is verified it is always acknowledged.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import InvalidSignature
from ..models import Booking, Order
from ..webhook_security import SquareWebhookVerifier, WebhookRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/square", tags=["webhooks"])


@router.post("")
async def handle_square_webhook(request: Request, db: Session = Depends(get_db)):
    # Raw bytes first - the signature covers the body exactly as sent
    body = await request.body()
    verifier = SquareWebhookVerifier(request.app.state.settings.square_webhook_signature_key)
    if not verifier.is_valid(WebhookRequest.from_request(request, body)):
        logger.error("❌ Invalid Square webhook signature")
        raise InvalidSignature()

    try:
        payload = json.loads(body.decode("utf-8"))
        event_type = payload.get("type", "")
        logger.info(f"📥 Received Square webhook: {event_type} ({payload.get('event_id')})")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type.startswith("booking."):
            handle_booking_event(obj.get("booking") or {}, db)
        elif event_type == "payment.updated":
            handle_payment_event(obj.get("payment") or {}, db)
        else:
            logger.info(f"ℹ️ Unhandled event type: {event_type}")
    except (ValueError, AttributeError) as e:
        logger.error(f"❌ Unreadable Square webhook payload: {e}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Square webhook processing error: {e}")

    return {"received": True}


def handle_booking_event(booking_data: dict[str, Any], db: Session) -> None:
    booking_id = booking_data.get("id")
    status = booking_data.get("status")
    if not booking_id or not status:
        logger.warning("⚠️ No booking id or status in webhook payload")
        return

    booking = db.query(Booking).filter(Booking.square_booking_id == booking_id).first()
    if not booking:
        logger.info(f"ℹ️ Square booking {booking_id} is not cached locally")
        return

    if booking.status != status:
        booking.status = status
        db.commit()
        logger.info(f"✅ Booking {booking.id} status -> {status}")


def handle_payment_event(payment_data: dict[str, Any], db: Session) -> None:
    order_id = payment_data.get("order_id")
    status = payment_data.get("status")
    if not order_id or not status:
        logger.warning("⚠️ No order id or status in payment webhook")
        return

    order = db.query(Order).filter(Order.square_order_id == order_id).first()
    if not order:
        logger.info(f"ℹ️ Square order {order_id} has no local order")
        return

    changed = False
    if order.status != status:
        order.status = status
        changed = True
    if payment_data.get("receipt_url") and not order.receipt_url:
        order.receipt_url = payment_data["receipt_url"]
        changed = True
    if changed:
        db.commit()
        logger.info(f"✅ Order {order.id} status -> {status}")
