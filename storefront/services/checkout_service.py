"""
Checkout payment orchestration

Cart -> Square order -> Square payment -> local Order receipt -> empty cart.

Amounts are charged from the cart-line price snapshots, never the live
catalog price. Each attempt uses fresh idempotency keys for the order and the
payment. A Square order created for an attempt whose payment fails is left
in place: it is never paid, so a retry (new order, new payment, new keys)
cannot double charge.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import EmptyCart, PaymentFailed, ProductNotFound, ProviderError
from ..models import Order, OrderItem, Product
from .cart_service import CENTS, CartOwner, CartService
from .square_client import SquareClient
from .square_oauth import SquareOAuthManager

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT_STATUSES = {"COMPLETED", "APPROVED"}


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents, half-up"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class CheckoutRequest:
    cart_id: str
    source_id: str
    verification_token: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None
    billing_address: Optional[dict[str, Any]] = None
    shipping_address: Optional[dict[str, Any]] = None


@dataclass
class CheckoutLine:
    product: Product
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENTS)


@dataclass
class CheckoutResult:
    order: Order
    payment: dict[str, Any] = field(default_factory=dict)


class CheckoutService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        carts: CartService,
        oauth: SquareOAuthManager,
        client: SquareClient,
    ):
        self.db = db
        self.settings = settings
        self.carts = carts
        self.oauth = oauth
        self.client = client

    def _snapshot_lines(self, cart_id: str) -> list[CheckoutLine]:
        lines = []
        for item in self.carts.repo.get_items(cart_id):
            product = self.carts.repo.get_product(item.product_id)
            if product is None:
                # A vanished product must fail the checkout, not shrink the charge
                logger.warning(f"⚠️ Checkout blocked: product {item.product_id} no longer exists")
                raise ProductNotFound(f"Product {item.product_id} is no longer available")
            lines.append(CheckoutLine(product=product, quantity=item.quantity, unit_price=Decimal(item.price)))
        return lines

    def _order_body(self, lines: list[CheckoutLine], location_id: str, cart_id: str) -> dict[str, Any]:
        currency = self.settings.square_currency
        return {
            "idempotency_key": new_idempotency_key(),
            "order": {
                "location_id": location_id,
                "reference_id": cart_id[:40],
                "line_items": [
                    {
                        "name": line.product.name,
                        "quantity": str(line.quantity),
                        "base_price_money": {
                            "amount": to_minor_units(line.unit_price),
                            "currency": currency,
                        },
                        "metadata": {
                            "product_id": str(line.product.id),
                            "variation_id": line.product.square_variation_id or "",
                        },
                    }
                    for line in lines
                ],
            },
        }

    def _payment_body(
        self,
        request: CheckoutRequest,
        order_id: str,
        location_id: str,
        amount: int,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "idempotency_key": new_idempotency_key(),
            "source_id": request.source_id,
            "order_id": order_id,
            "location_id": location_id,
            "amount_money": {"amount": amount, "currency": self.settings.square_currency},
            "autocomplete": True,
        }
        if request.verification_token:
            body["verification_token"] = request.verification_token
        if request.buyer_email:
            body["buyer_email_address"] = request.buyer_email
        if request.billing_address:
            body["billing_address"] = request.billing_address
        if request.shipping_address:
            body["shipping_address"] = request.shipping_address
        return body

    async def checkout(self, request: CheckoutRequest, owner: CartOwner) -> CheckoutResult:
        cart = self.carts.load_owned_cart(request.cart_id, owner)
        lines = self._snapshot_lines(cart.id)
        if not lines:
            raise EmptyCart()

        subtotal = sum((line.line_total for line in lines), Decimal("0")).quantize(CENTS)
        amount = sum(to_minor_units(line.unit_price) * line.quantity for line in lines)

        try:
            access_token = await self.oauth.resolve_access_token()
            location_id = await self.oauth.resolve_location_id(access_token)
        except ProviderError as e:
            logger.error(f"❌ Could not resolve Square credentials for cart {cart.id}: {e}")
            raise PaymentFailed(cause=e) from e

        try:
            remote_order = await self.client.create_order(
                access_token, self._order_body(lines, location_id, cart.id)
            )
        except ProviderError as e:
            logger.error(f"❌ Square order creation failed for cart {cart.id}: {e}")
            raise PaymentFailed(cause=e) from e

        order_id = remote_order.get("id")
        if not order_id:
            logger.error(f"❌ Square order response for cart {cart.id} carried no id")
            raise PaymentFailed()
        logger.info(f"✅ Square order created: {order_id}")

        # From here on a failure leaves an unpaid Square order behind; it is inert
        try:
            payment = await self.client.create_payment(
                access_token, self._payment_body(request, order_id, location_id, amount)
            )
        except ProviderError as e:
            logger.error(f"❌ Square payment failed for order {order_id}: {e}")
            raise PaymentFailed(cause=e) from e

        status = payment.get("status")
        if status not in SUCCESSFUL_PAYMENT_STATUSES:
            logger.error(f"❌ Square payment for order {order_id} returned status {status}")
            raise PaymentFailed()
        logger.info(f"✅ Square payment {payment.get('id')} {status} for order {order_id}")

        order = self._record_order(request, owner, lines, order_id, payment, subtotal, amount)
        self.carts.clear_cart(cart)
        return CheckoutResult(order=order, payment=payment)

    def _record_order(
        self,
        request: CheckoutRequest,
        owner: CartOwner,
        lines: list[CheckoutLine],
        square_order_id: str,
        payment: dict[str, Any],
        subtotal: Decimal,
        amount: int,
    ) -> Order:
        order = Order(
            square_order_id=square_order_id,
            square_payment_id=payment.get("id"),
            status=payment.get("status", "COMPLETED"),
            user_id=owner.user_id,
            buyer_email=request.buyer_email,
            buyer_name=request.buyer_name,
            subtotal=subtotal,
            total=(Decimal(amount) / 100).quantize(CENTS),
            currency=self.settings.square_currency,
            receipt_url=payment.get("receipt_url"),
            billing_address=request.billing_address,
            shipping_address=request.shipping_address,
            items=[
                OrderItem(
                    product_id=line.product.id,
                    name=line.product.name,
                    sku=line.product.sku,
                    price=line.unit_price,
                    quantity=line.quantity,
                )
                for line in lines
            ],
        )
        self.db.add(order)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            # Money has moved - make sure the Square ids end up in the logs
            logger.error(
                f"❌ Payment {payment.get('id')} captured for Square order {square_order_id} "
                f"but the local order could not be saved"
            )
            raise
        self.db.refresh(order)
        logger.info(f"🧾 Order {order.id} recorded for Square order {square_order_id}")
        return order
