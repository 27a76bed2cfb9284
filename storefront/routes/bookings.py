import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from ..dependencies import get_booking_service
from ..rate_limiter import create_rate_limiter
from ..schemas import BookingCreateRequest, BookingCreateResponse
from ..services.booking_service import BookingRequest, BookingService, to_utc_naive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


@router.get("/availability")
async def get_availability(
    serviceId: int = Query(...),
    startAt: datetime = Query(...),
    endAt: datetime = Query(...),
    service: BookingService = Depends(get_booking_service),
):
    if to_utc_naive(endAt) <= to_utc_naive(startAt):
        raise HTTPException(status_code=400, detail="endAt must be after startAt")
    return await service.get_availability(serviceId, startAt, endAt)


@router.post("", response_model=BookingCreateResponse)
async def create_booking(
    data: BookingCreateRequest,
    service: BookingService = Depends(get_booking_service),
    _: None = Depends(create_rate_limiter("bookings")),
):
    booking = await service.create_booking(
        BookingRequest(
            service_id=data.serviceId,
            start_at=data.startAt,
            team_member_id=data.teamMemberId,
            customer_name=data.customerName,
            customer_email=data.customerEmail,
            customer_phone=data.customerPhone,
            notes=data.notes,
            service_variation_id=data.serviceVariationId,
            service_variation_version=data.serviceVariationVersion,
        )
    )
    return BookingCreateResponse(
        bookingId=booking.id,
        squareBookingId=booking.square_booking_id,
        status=booking.status,
        startAt=booking.start_at,
        endAt=booking.end_at,
    )
