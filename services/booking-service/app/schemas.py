from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .transitions import BookingMode, UrgencyLevel


class Location(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: Optional[str] = None


class ServiceRef(BaseModel):
    category_id: str
    subcategory_id: Optional[str] = None
    service_id: Optional[str] = None
    base_price: Decimal = Field(gt=0, decimal_places=2)
    deposit_percent: Optional[Decimal] = Field(default=None, gt=0, le=100)


class CreateBookingRequest(BaseModel):
    mode: BookingMode = BookingMode.NORMAL
    customer_id: str
    provider_id: Optional[str] = None
    service: ServiceRef
    location: Optional[Location] = None
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_dispatch_target(self):
        if self.mode == BookingMode.NORMAL and not self.provider_id:
            raise ValueError("normal bookings need a provider_id")
        if self.mode == BookingMode.SOS and not self.provider_id and self.location is None:
            raise ValueError("sos bookings without a provider need a location to dispatch from")
        return self


class AcceptBookingRequest(BaseModel):
    provider_id: str


class DeclineBookingRequest(BaseModel):
    reason: Optional[str] = None


class CancelBookingRequest(BaseModel):
    actor: Literal["customer", "provider", "admin"]
    reason: Optional[str] = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    mode: str
    status: str
    customer_id: str
    provider_id: Optional[str] = None

    category_id: str
    subcategory_id: Optional[str] = None
    service_id: Optional[str] = None
    base_price: Decimal

    total_amount: Decimal
    deposit_amount: Decimal
    platform_fee: Decimal
    currency: str

    urgency_level: Optional[str] = None
    service_address: Optional[str] = None

    response_deadline: Optional[datetime] = None
    payment_ref: Optional[str] = None

    declined_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    created_at: datetime
    status_changed_at: datetime


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    booking_id: str
    amount: Decimal
    currency: str
    state: str
    captured_amount: Decimal
    refunded_amount: Decimal
    failure_reason: Optional[str] = None


class ProviderCandidate(BaseModel):
    provider_id: str
    distance_km: float
    rating: float
    is_verified: bool
    estimated_response_minutes: int
    urgency_match_score: float
    score: float = 0.0


class ProviderSearchRequest(BaseModel):
    category_id: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    urgency_level: UrgencyLevel = UrgencyLevel.EMERGENCY


class CandidateList(BaseModel):
    candidates: List[ProviderCandidate]
    no_providers_available: bool


class DispatchResponse(CandidateList):
    booking_id: str
