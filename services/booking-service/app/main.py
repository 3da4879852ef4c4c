import asyncio
import logging

from fastapi import FastAPI

from shared.redis import redis_client

from .breaker import CircuitBreaker
from .config import (
    LOCATION_SERVICE_URL,
    LOG_LEVEL,
    PAYMENT_GATEWAY_KEY,
    PAYMENT_GATEWAY_URL,
)
from .db import SessionLocal
from .deadlines import DeadlineManager
from .gateway import HttpPaymentGateway
from .middleware import RequestLoggingMiddleware
from .payments import PaymentOrchestrator
from .publisher import RabbitPublisher
from .ranking import HttpProviderSource, ProviderRanker
from .repository import BookingRepository, PaymentRepository
from .routes import install_error_handlers, router
from .state_machine import BookingStateMachine

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("booking-service")

cb_payments = CircuitBreaker("payment-gateway", redis_client, failure_threshold=5, reset_timeout_seconds=10)
cb_locations = CircuitBreaker("location-service", redis_client, failure_threshold=5, reset_timeout_seconds=10)

publisher = RabbitPublisher()
gateway = HttpPaymentGateway(PAYMENT_GATEWAY_URL, PAYMENT_GATEWAY_KEY, breaker=cb_payments)
bookings = BookingRepository(SessionLocal)
deadlines = DeadlineManager()

machine = BookingStateMachine(
    bookings,
    PaymentOrchestrator(gateway, PaymentRepository(SessionLocal)),
    deadlines,
    ranker=ProviderRanker(HttpProviderSource(LOCATION_SERVICE_URL, breaker=cb_locations), cache=redis_client),
    publisher=publisher,
)

app = FastAPI(title="Booking Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)
install_error_handlers(app)
app.state.machine = machine

_stop_event = asyncio.Event()
_sweep_task = None


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "booking-service",
        "events_enabled": publisher.enabled,
        "deadlines_watched": len(deadlines),
    }


@app.get("/system/breakers")
async def breakers_status():
    statuses = await asyncio.gather(cb_payments.status(), cb_locations.status())
    return {"breakers": sorted(statuses, key=lambda x: x["name"])}


@app.on_event("startup")
async def startup():
    global _sweep_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    # timers do not survive restarts: rebuild them from the store
    await deadlines.reconcile(bookings)
    _sweep_task = asyncio.create_task(deadlines.sweep_loop(_stop_event, bookings))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _sweep_task:
        try:
            await _sweep_task
        except Exception as e:
            logger.warning("sweep loop ended with error: %s", e)
    await deadlines.close()
    await gateway.close()
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)
