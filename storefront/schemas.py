"""Request/response schemas for the commerce endpoints"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, field_validator

from .shared.validators import validate_email

# ============================================================================
# CART
# ============================================================================


class AddCartItemRequest(BaseModel):
    productId: int
    quantity: int = 1

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v


class UpdateCartItemRequest(BaseModel):
    quantity: int  # 0 or less removes the line


class CartProductSummary(BaseModel):
    id: int
    name: str
    price: float
    imageUrl: Optional[str] = None
    sku: Optional[str] = None


class CartItemResponse(BaseModel):
    id: int
    productId: int
    quantity: int
    price: float
    createdAt: datetime
    product: Optional[CartProductSummary] = None


class CartTotals(BaseModel):
    subtotal: float
    itemCount: int


class CartResponse(BaseModel):
    id: str
    sessionId: Optional[str] = None
    userId: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
    expiresAt: datetime
    items: list[CartItemResponse]
    totals: CartTotals


# ============================================================================
# CHECKOUT
# ============================================================================


class Address(BaseModel):
    addressLine1: Optional[str] = None
    addressLine2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = "US"
    firstName: Optional[str] = None
    lastName: Optional[str] = None

    def to_square(self) -> dict[str, Any]:
        """Square Address object"""
        address = {
            "address_line_1": self.addressLine1,
            "address_line_2": self.addressLine2,
            "locality": self.city,
            "administrative_district_level_1": self.state,
            "postal_code": self.postalCode,
            "country": self.country,
            "first_name": self.firstName,
            "last_name": self.lastName,
        }
        return {k: v for k, v in address.items() if v}


class CheckoutPaymentRequest(BaseModel):
    cartId: str
    sourceId: str
    verificationToken: Optional[str] = None
    buyerEmail: Optional[str] = None
    buyerName: Optional[str] = None
    billingAddress: Optional[Address] = None
    shippingAddress: Optional[Address] = None

    @field_validator("buyerEmail")
    @classmethod
    def validate_buyer_email(cls, v):
        if v:
            return validate_email(v)
        return v

    @field_validator("sourceId", "cartId")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class CheckoutPaymentResponse(BaseModel):
    success: bool = True
    orderId: int
    squareOrderId: str
    squarePaymentId: Optional[str] = None
    receiptUrl: Optional[str] = None
    total: float


# ============================================================================
# BOOKINGS
# ============================================================================


class BookingCreateRequest(BaseModel):
    serviceId: int
    startAt: datetime
    teamMemberId: str
    serviceVariationId: Optional[str] = None
    serviceVariationVersion: Optional[Union[str, int]] = None
    customerName: str
    customerEmail: str
    customerPhone: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("customerEmail")
    @classmethod
    def validate_customer_email(cls, v: str) -> str:
        return validate_email(v)

    @field_validator("customerName", "teamMemberId")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("serviceVariationVersion")
    @classmethod
    def version_as_string(cls, v):
        return str(v) if v is not None else None


class BookingCreateResponse(BaseModel):
    success: bool = True
    bookingId: int
    squareBookingId: str
    status: str
    startAt: datetime
    endAt: datetime


# ============================================================================
# SQUARE ADMIN
# ============================================================================


class SquareStatusResponse(BaseModel):
    connected: bool
    environment: str
    merchantId: Optional[str] = None
    locationId: Optional[str] = None
    expiresAt: Optional[str] = None


class CatalogSyncResponse(BaseModel):
    total: int
    updated: int
    skipped: int
    errors: int
