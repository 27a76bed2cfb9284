"""
Cart endpoints
Guests identify their cart with the x-cart-session header (or ?sessionId=);
the current session id is echoed back on every response.
"""

import logging

from fastapi import APIRouter, Depends, Response

from ..dependencies import CART_SESSION_HEADER, get_cart_owner, get_cart_service
from ..models import Cart
from ..rate_limiter import create_rate_limiter
from ..schemas import AddCartItemRequest, CartResponse, UpdateCartItemRequest
from ..services.cart_service import CartOwner, CartService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


def _cart_response(service: CartService, cart: Cart, response: Response) -> dict:
    if cart.session_id:
        response.headers[CART_SESSION_HEADER] = cart.session_id
    return service.serialize(cart)


@router.get("", response_model=CartResponse)
async def get_cart(
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
):
    cart = service.resolve_cart(owner)
    return _cart_response(service, cart, response)


@router.post("/items", response_model=CartResponse)
async def add_cart_item(
    data: AddCartItemRequest,
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
    _: None = Depends(create_rate_limiter("cart")),
):
    cart = service.add_item(owner, data.productId, data.quantity)
    logger.info(f"🛒 Product {data.productId} x{data.quantity} added to cart {cart.id}")
    return _cart_response(service, cart, response)


@router.patch("/items/{item_id}", response_model=CartResponse)
async def update_cart_item(
    item_id: int,
    data: UpdateCartItemRequest,
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
    _: None = Depends(create_rate_limiter("cart")),
):
    cart = service.update_item(owner, item_id, data.quantity)
    return _cart_response(service, cart, response)


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_cart_item(
    item_id: int,
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
    _: None = Depends(create_rate_limiter("cart")),
):
    cart = service.remove_item(owner, item_id)
    return _cart_response(service, cart, response)


@router.delete("", response_model=CartResponse)
async def clear_cart(
    response: Response,
    owner: CartOwner = Depends(get_cart_owner),
    service: CartService = Depends(get_cart_service),
    _: None = Depends(create_rate_limiter("cart")),
):
    cart = service.clear(owner)
    return _cart_response(service, cart, response)
