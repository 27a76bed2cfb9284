"""
Square Bookings - availability lookup and booking creation
The local Booking row is only a cache of the Square booking and is written
after Square has accepted it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..errors import BookingFailed, ProviderError, ServiceNotFound, ServiceNotSynced
from ..models import Booking, ServiceItem
from ..shared.validators import normalize_phone
from .square_client import SquareClient
from .square_oauth import SquareOAuthManager

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_rfc3339(value: datetime) -> str:
    return to_utc_naive(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def _variation_version(raw: Any) -> Any:
    # Square sends versions as int64; keep strings that are not numeric as-is
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return raw


@dataclass(frozen=True)
class BookingRequest:
    service_id: int
    start_at: datetime
    team_member_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    service_variation_id: Optional[str] = None
    service_variation_version: Optional[str] = None


class BookingService:
    def __init__(self, db: Session, oauth: SquareOAuthManager, client: SquareClient):
        self.db = db
        self.oauth = oauth
        self.client = client

    def _synced_service(self, service_id: int) -> ServiceItem:
        service = self.db.query(ServiceItem).filter(ServiceItem.id == service_id).first()
        if service is None:
            raise ServiceNotFound()
        if not service.square_variation_id:
            raise ServiceNotSynced()
        return service

    @staticmethod
    def _duration(service: ServiceItem) -> int:
        return service.duration_minutes or DEFAULT_DURATION_MINUTES

    async def get_availability(self, service_id: int, start_at: datetime, end_at: datetime) -> dict[str, Any]:
        service = self._synced_service(service_id)
        access_token = await self.oauth.resolve_access_token()
        location_id = await self.oauth.resolve_location_id(access_token)

        slots = await self.client.search_availability(
            access_token,
            {
                "query": {
                    "filter": {
                        "start_at_range": {
                            "start_at": to_rfc3339(start_at),
                            "end_at": to_rfc3339(end_at),
                        },
                        "location_id": location_id,
                        "segment_filters": [{"service_variation_id": service.square_variation_id}],
                    }
                }
            },
        )

        default_duration = self._duration(service)
        availabilities = [
            {
                "startAt": slot.get("start_at"),
                "locationId": slot.get("location_id", location_id),
                "segments": [
                    {
                        "staffId": segment.get("team_member_id"),
                        "variationId": segment.get("service_variation_id"),
                        "variationVersion": segment.get("service_variation_version"),
                        "durationMinutes": segment.get("duration_minutes") or default_duration,
                    }
                    for segment in slot.get("appointment_segments", [])
                ],
            }
            for slot in slots
        ]
        logger.info(f"📅 {len(availabilities)} slots for service {service.id}")

        return {
            "serviceId": service.id,
            "serviceVariationId": service.square_variation_id,
            "serviceVariationVersion": service.square_variation_version,
            "availabilities": availabilities,
        }

    async def create_booking(self, request: BookingRequest) -> Booking:
        service = self._synced_service(request.service_id)
        duration = self._duration(service)
        phone = normalize_phone(request.customer_phone)

        try:
            access_token = await self.oauth.resolve_access_token()
            location_id = await self.oauth.resolve_location_id(access_token)
            customer = await self.client.create_customer(access_token, self._customer_body(request, phone))
            customer_id = customer.get("id")
            if not customer_id:
                raise ProviderError("No customer ID returned from Square")

            remote = await self.client.create_booking(
                access_token,
                {
                    "idempotency_key": str(uuid.uuid4()),
                    "booking": {
                        "start_at": to_rfc3339(request.start_at),
                        "location_id": location_id,
                        "customer_id": customer_id,
                        **({"customer_note": request.notes} if request.notes else {}),
                        "appointment_segments": [
                            {
                                "team_member_id": request.team_member_id,
                                "service_variation_id": request.service_variation_id
                                or service.square_variation_id,
                                "service_variation_version": _variation_version(
                                    request.service_variation_version or service.square_variation_version
                                ),
                                "duration_minutes": duration,
                            }
                        ],
                    },
                },
            )
        except ProviderError as e:
            logger.error(f"❌ Square booking failed for service {service.id}: {e}")
            raise BookingFailed(cause=e) from e

        remote_id = remote.get("id")
        if not remote_id:
            logger.error("❌ Square booking response carried no id")
            raise BookingFailed()

        start_at = to_utc_naive(request.start_at)
        booking = Booking(
            square_booking_id=remote_id,
            square_customer_id=customer_id,
            service_id=service.id,
            team_member_id=request.team_member_id,
            start_at=start_at,
            end_at=start_at + timedelta(minutes=duration),
            status=remote.get("status", "ACCEPTED"),
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            customer_phone=phone,
            notes=request.notes,
        )
        self.db.add(booking)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"❌ Square booking {remote_id} created but the local cache row could not be saved")
            raise
        self.db.refresh(booking)
        logger.info(f"✅ Booking {booking.id} cached for Square booking {remote_id}")
        return booking

    @staticmethod
    def _customer_body(request: BookingRequest, phone: Optional[str]) -> dict[str, Any]:
        given_name, _, family_name = request.customer_name.strip().partition(" ")
        body = {
            "idempotency_key": str(uuid.uuid4()),
            "given_name": given_name,
            "family_name": family_name.strip() or None,
            "email_address": request.customer_email,
            "phone_number": phone,
            "note": "Created from online booking",
        }
        # Remove None values
        return {k: v for k, v in body.items() if v is not None}
