from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .errors import (
    AlreadyAssigned,
    BookingError,
    BookingNotFound,
    InvalidPaymentState,
    InvalidTransition,
    LockTimeout,
    PaymentDeclined,
    PaymentNotFound,
    PaymentOperationFailed,
    ProviderSearchUnavailable,
)
from .schemas import (
    AcceptBookingRequest,
    BookingResponse,
    CancelBookingRequest,
    CandidateList,
    CreateBookingRequest,
    DeclineBookingRequest,
    DispatchResponse,
    Location,
    PaymentResponse,
    ProviderSearchRequest,
)
from .state_machine import BookingStateMachine

router = APIRouter()

ERROR_STATUS = [
    (BookingNotFound, 404),
    (PaymentNotFound, 404),
    (AlreadyAssigned, 409),
    (InvalidTransition, 409),
    (InvalidPaymentState, 409),
    (PaymentDeclined, 402),
    (PaymentOperationFailed, 502),
    (LockTimeout, 503),
    (ProviderSearchUnavailable, 503),
]


def status_for(exc: BookingError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "code": exc.code},
    )


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(BookingError, booking_error_handler)


def get_machine(request: Request) -> BookingStateMachine:
    return request.app.state.machine


def _actor_id(request: Request) -> str | None:
    # set by the API gateway from the verified token
    return request.headers.get("X-User-Sub")


@router.post("/bookings", response_model=BookingResponse)
async def create_booking(data: CreateBookingRequest, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.create(data)
    return BookingResponse.model_validate(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.get(booking_id)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(booking_id: str, data: AcceptBookingRequest, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.accept(booking_id, data.provider_id)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(booking_id: str, data: DeclineBookingRequest, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.decline(booking_id, data.reason)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_booking(booking_id: str, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.start(booking_id)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: str, machine: BookingStateMachine = Depends(get_machine)):
    booking = await machine.complete(booking_id)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    request: Request,
    machine: BookingStateMachine = Depends(get_machine),
):
    actor = data.actor
    sub = _actor_id(request)
    if sub:
        actor = f"{actor}:{sub}"
    booking = await machine.cancel(booking_id, actor, data.reason)
    return BookingResponse.model_validate(booking)


@router.post("/bookings/{booking_id}/dispatch", response_model=DispatchResponse)
async def redispatch_booking(booking_id: str, machine: BookingStateMachine = Depends(get_machine)):
    candidates = await machine.redispatch(booking_id)
    return DispatchResponse(
        booking_id=booking_id,
        candidates=candidates,
        no_providers_available=not candidates,
    )


@router.post("/sos/providers", response_model=CandidateList)
async def search_sos_providers(data: ProviderSearchRequest, machine: BookingStateMachine = Depends(get_machine)):
    if machine.ranker is None:
        raise ProviderSearchUnavailable("no provider ranker configured")
    candidates = await machine.ranker.rank(
        data.category_id,
        Location(latitude=data.latitude, longitude=data.longitude),
        data.urgency_level,
    )
    return CandidateList(candidates=candidates, no_providers_available=not candidates)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: str, machine: BookingStateMachine = Depends(get_machine)):
    payment = await machine.payments.get(payment_id)
    return PaymentResponse.model_validate(payment)
