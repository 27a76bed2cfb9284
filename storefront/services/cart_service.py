"""
Cart session management

A cart belongs to a guest session (x-cart-session) and/or an authenticated
user. Carts are created lazily, expire after a sliding TTL, and are deleted
and recreated - never revived - once past expiry. Totals are always derived
from the current lines.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..domain.cart.repository import CartRepository
from ..errors import AccessDenied, CartItemNotFound, CartNotFound, ProductNotFound
from ..models import Cart, CartItem, utcnow

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CartOwner:
    """Who is asking: the authenticated user and/or the guest session id"""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def owns(self, cart: Cart) -> bool:
        if self.user_id and cart.user_id == self.user_id:
            return True
        return bool(self.session_id and cart.session_id == self.session_id)


def compute_totals(items: list[CartItem]) -> dict[str, Any]:
    subtotal = sum((Decimal(item.price) * item.quantity for item in items), Decimal("0"))
    return {
        "subtotal": subtotal.quantize(CENTS),
        "itemCount": sum(item.quantity for item in items),
    }


def new_session_id() -> str:
    return secrets.token_hex(16)


class CartService:
    def __init__(
        self,
        db: Session,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = CartRepository(db)
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _is_expired(self, cart: Cart) -> bool:
        return cart.expires_at <= self._clock()

    def _live(self, cart: Optional[Cart]) -> Optional[Cart]:
        """Return cart unless it has expired, in which case it is deleted with its lines"""
        if cart is None:
            return None
        if self._is_expired(cart):
            logger.info(f"Cart {cart.id} expired at {cart.expires_at}, discarding")
            self.repo.delete_cart(cart)
            return None
        return cart

    def _touch(self, cart: Cart) -> None:
        now = self._clock()
        cart.updated_at = now
        cart.expires_at = now + self.ttl

    def _create(self, user_id: Optional[str]) -> Cart:
        now = self._clock()
        cart = self.repo.create_cart(
            session_id=new_session_id(),
            user_id=user_id,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        logger.info(f"🛒 Created cart {cart.id} ({'user' if user_id else 'guest'})")
        return cart

    def _merge_into(self, target: Cart, source: Cart) -> None:
        for line in self.repo.get_items(source.id):
            self.repo.merge_item(target.id, line.product_id, line.quantity, Decimal(line.price))
        logger.info(f"🛒 Merged guest cart {source.id} into cart {target.id}")
        self.repo.delete_cart(source)

    def resolve_cart(self, owner: CartOwner) -> Cart:
        """
        Resolution order: the user's cart, then the session cart, then a new cart.
        A guest cart seen together with a signed-in user is adopted by that user,
        or merged into the user's existing cart.
        """
        cart = self._live(self.repo.get_cart_by_user(owner.user_id)) if owner.user_id else None

        session_cart = None
        if owner.session_id and (cart is None or cart.session_id != owner.session_id):
            session_cart = self._live(self.repo.get_cart_by_session(owner.session_id))

        if owner.user_id and session_cart is not None:
            if session_cart.user_id not in (None, owner.user_id):
                # Another user's cart - a signed-in user never picks it up by session id
                session_cart = None
            elif cart is not None:
                self._merge_into(cart, session_cart)
                self._touch(cart)
                cart = self.repo.save(cart)
                session_cart = None
            elif session_cart.user_id is None:
                session_cart.user_id = owner.user_id
                self._touch(session_cart)
                session_cart = self.repo.save(session_cart)
                logger.info(f"🛒 Cart {session_cart.id} adopted by signed-in user")

        if cart is None:
            cart = session_cart
        return cart if cart is not None else self._create(owner.user_id)

    def load_owned_cart(self, cart_id: str, owner: CartOwner) -> Cart:
        """Load a cart by id for checkout, enforcing ownership and expiry"""
        cart = self._live(self.repo.get_cart(cart_id))
        if cart is None:
            raise CartNotFound()
        if not owner.owns(cart):
            logger.warning(f"🚫 Cart {cart_id} access denied")
            raise AccessDenied()
        return cart

    def _owned_item(self, item_id: int, owner: CartOwner) -> CartItem:
        item = self.repo.get_item(item_id)
        if item is None:
            raise CartItemNotFound()
        if not owner.owns(item.cart):
            logger.warning(f"🚫 Cart item {item_id} access denied")
            raise AccessDenied("Cart item does not belong to this session")
        if self._live(item.cart) is None:
            raise CartItemNotFound()
        return item

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(self, owner: CartOwner, product_id: int, quantity: int) -> Cart:
        if quantity <= 0:
            raise ValueError("quantity must be at least 1")

        product = self.repo.get_product(product_id)
        if product is None or not product.is_visible or not product.square_variation_id:
            raise ProductNotFound()

        cart = self.resolve_cart(owner)
        self.repo.merge_item(cart.id, product.id, quantity, Decimal(product.price))
        self._touch(cart)
        return self.repo.save(cart)

    def update_item(self, owner: CartOwner, item_id: int, quantity: int) -> Cart:
        item = self._owned_item(item_id, owner)
        cart = item.cart
        if quantity <= 0:
            self.repo.delete_item(item)
        else:
            self.repo.set_item_quantity(item, quantity)
        self._touch(cart)
        return self.repo.save(cart)

    def remove_item(self, owner: CartOwner, item_id: int) -> Cart:
        item = self._owned_item(item_id, owner)
        cart = item.cart
        self.repo.delete_item(item)
        self._touch(cart)
        return self.repo.save(cart)

    def clear(self, owner: CartOwner) -> Cart:
        cart = self.resolve_cart(owner)
        self.repo.clear_items(cart.id)
        self._touch(cart)
        return self.repo.save(cart)

    def clear_cart(self, cart: Cart) -> None:
        """Empty a cart after a successful checkout"""
        self.repo.clear_items(cart.id)
        self._touch(cart)
        self.repo.save(cart)

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def serialize(self, cart: Cart) -> dict[str, Any]:
        items = self.repo.get_items(cart.id)
        totals = compute_totals(items)
        return {
            "id": cart.id,
            "sessionId": cart.session_id,
            "userId": cart.user_id,
            "createdAt": cart.created_at,
            "updatedAt": cart.updated_at,
            "expiresAt": cart.expires_at,
            "items": [
                {
                    "id": item.id,
                    "productId": item.product_id,
                    "quantity": item.quantity,
                    "price": Decimal(item.price),
                    "createdAt": item.created_at,
                    "product": _product_summary(item),
                }
                for item in items
            ],
            "totals": totals,
        }


def _product_summary(item: CartItem) -> Optional[dict[str, Any]]:
    product = item.product
    if product is None:
        return None
    return {
        "id": product.id,
        "name": product.name,
        "price": Decimal(product.price),
        "imageUrl": product.image_url,
        "sku": product.sku,
    }
