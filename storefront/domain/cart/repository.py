"""Cart repository - Database operations for carts and cart lines"""

from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Cart, CartItem, Product


class CartRepository:
    """Repository for cart database operations"""

    def __init__(self, db: Session):
        self.db = db

    def get_cart(self, cart_id: str) -> Optional[Cart]:
        return self.db.query(Cart).filter(Cart.id == cart_id).first()

    def get_cart_by_user(self, user_id: str) -> Optional[Cart]:
        return (
            self.db.query(Cart)
            .filter(Cart.user_id == user_id)
            .order_by(Cart.updated_at.desc())
            .first()
        )

    def get_cart_by_session(self, session_id: str) -> Optional[Cart]:
        return self.db.query(Cart).filter(Cart.session_id == session_id).first()

    def create_cart(self, **cart_data) -> Cart:
        cart = Cart(**cart_data)
        self.db.add(cart)
        self.db.commit()
        self.db.refresh(cart)
        return cart

    def delete_cart(self, cart: Cart) -> None:
        # Lines go with the cart through the relationship cascade
        self.db.delete(cart)
        self.db.commit()

    def get_items(self, cart_id: str) -> list[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.cart_id == cart_id)
            .order_by(CartItem.id)
            .all()
        )

    def get_item(self, item_id: int) -> Optional[CartItem]:
        return self.db.query(CartItem).filter(CartItem.id == item_id).first()

    def get_item_for_product(self, cart_id: str, product_id: int) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
            .first()
        )

    def get_product(self, product_id: int) -> Optional[Product]:
        return self.db.query(Product).filter(Product.id == product_id).first()

    def merge_item(self, cart_id: str, product_id: int, quantity: int, price: Decimal) -> CartItem:
        """
        Add quantity to the (cart, product) line, creating it if needed.
        The unique constraint on (cart_id, product_id) settles concurrent inserts:
        the loser retries as a quantity merge instead of creating a second row.
        """
        existing = self.get_item_for_product(cart_id, product_id)
        if existing:
            existing.quantity += quantity
            existing.price = price
            self.db.commit()
            return existing

        item = CartItem(cart_id=cart_id, product_id=product_id, quantity=quantity, price=price)
        self.db.add(item)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_item_for_product(cart_id, product_id)
            if existing is None:
                raise
            existing.quantity += quantity
            existing.price = price
            self.db.commit()
            return existing
        return item

    def set_item_quantity(self, item: CartItem, quantity: int) -> CartItem:
        item.quantity = quantity
        self.db.commit()
        return item

    def delete_item(self, item: CartItem) -> None:
        self.db.delete(item)
        self.db.commit()

    def clear_items(self, cart_id: str) -> int:
        deleted = self.db.query(CartItem).filter(CartItem.cart_id == cart_id).delete(synchronize_session=False)
        self.db.commit()
        return deleted

    def save(self, cart: Cart) -> Cart:
        self.db.commit()
        self.db.refresh(cart)
        return cart
