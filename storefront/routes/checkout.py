import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_cart_owner, get_checkout_service
from ..rate_limiter import create_rate_limiter
from ..schemas import CheckoutPaymentRequest, CheckoutPaymentResponse
from ..services.cart_service import CartOwner
from ..services.checkout_service import CheckoutRequest, CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


@router.post("/payment", response_model=CheckoutPaymentResponse)
async def create_checkout_payment(
    data: CheckoutPaymentRequest,
    owner: CartOwner = Depends(get_cart_owner),
    service: CheckoutService = Depends(get_checkout_service),
    _: None = Depends(create_rate_limiter("checkout")),
):
    """
    Charge the cart through Square

    The cart must belong to the caller's session or account. On success the
    local order is recorded and the cart is emptied.
    """
    result = await service.checkout(
        CheckoutRequest(
            cart_id=data.cartId,
            source_id=data.sourceId,
            verification_token=data.verificationToken,
            buyer_email=data.buyerEmail,
            buyer_name=data.buyerName,
            billing_address=data.billingAddress.to_square() if data.billingAddress else None,
            shipping_address=data.shippingAddress.to_square() if data.shippingAddress else None,
        ),
        owner,
    )
    order = result.order
    return CheckoutPaymentResponse(
        orderId=order.id,
        squareOrderId=order.square_order_id,
        squarePaymentId=order.square_payment_id,
        receiptUrl=order.receipt_url,
        total=float(order.total),
    )
