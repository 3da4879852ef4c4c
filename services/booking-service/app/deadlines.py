"""
Response deadline manager.

Each pending booking gets one cancellable asyncio task that sleeps until the
response deadline and then asks the state machine to expire the booking.
Timers live in memory only; reconcile() rebuilds them from the store after a
restart and sweep_loop() catches anything a lost timer would have missed.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from shared.database import utcnow

from .config import EXPIRY_RETRY_SECONDS, EXPIRY_SWEEP_SECONDS
from .errors import BookingNotFound, InvalidTransition, LockTimeout, PaymentOperationFailed

logger = logging.getLogger(__name__)


class DeadlineManager:
    def __init__(self, clock=utcnow, retry_seconds: float = EXPIRY_RETRY_SECONDS):
        self._clock = clock
        self.retry_seconds = retry_seconds
        self._timers: dict[str, asyncio.Task] = {}
        self._expire = None

    def bind(self, expire):
        """expire: coroutine function taking a booking id (BookingStateMachine.expire)."""
        self._expire = expire

    def watch(self, booking_id: str, deadline: datetime) -> None:
        self.cancel(booking_id)
        delay = (deadline - self._clock()).total_seconds()
        task = asyncio.create_task(self._run(booking_id, deadline, delay), name=f"deadline:{booking_id}")
        self._timers[booking_id] = task

    def cancel(self, booking_id: str) -> bool:
        """
        Best effort: the timer may already be firing. Callers re-check the
        booking status afterwards, the state machine does that under its lock.
        """
        task = self._timers.pop(booking_id, None)
        if task is None:
            return False
        if task is asyncio.current_task() or task.done():
            return False
        task.cancel()
        return True

    def is_watching(self, booking_id: str) -> bool:
        task = self._timers.get(booking_id)
        return bool(task and not task.done())

    def __len__(self) -> int:
        return sum(1 for t in self._timers.values() if not t.done())

    async def _run(self, booking_id: str, deadline: datetime, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        # the loop clock and the wall clock can disagree by a little
        remaining = (deadline - self._clock()).total_seconds()
        while remaining > 0:
            await asyncio.sleep(remaining)
            remaining = (deadline - self._clock()).total_seconds()
        await self.fire(booking_id)

    async def fire(self, booking_id: str) -> bool:
        """
        Expire the booking now. Returns True if it was expired by this call.
        Losing the race against accept/decline/cancel is a silent no-op.
        """
        if self._expire is None:
            raise RuntimeError("DeadlineManager is not bound to a state machine")

        try:
            await self._expire(booking_id)
            logger.info("booking %s expired at its response deadline", booking_id)
            return True
        except (InvalidTransition, BookingNotFound) as e:
            logger.debug("deadline for %s fired after resolution: %s", booking_id, e)
            return False
        except (PaymentOperationFailed, LockTimeout) as e:
            logger.error("expiring booking %s failed, retrying in %ss: %s", booking_id, self.retry_seconds, e)
            self.watch(booking_id, self._clock() + timedelta(seconds=self.retry_seconds))
            return False
        finally:
            current = asyncio.current_task()
            if self._timers.get(booking_id) is current:
                del self._timers[booking_id]

    async def reconcile(self, bookings) -> dict:
        """
        Restart recovery: expire overdue pending bookings now, re-register the rest.
        """
        now = self._clock()
        expired = 0
        watched = 0
        for booking in await bookings.list_pending():
            if booking.response_deadline is None:
                logger.error("pending booking %s has no response deadline", booking.booking_id)
                continue
            if booking.response_deadline <= now:
                if await self.fire(booking.booking_id):
                    expired += 1
            else:
                self.watch(booking.booking_id, booking.response_deadline)
                watched += 1

        logger.info("deadline reconcile: expired=%d watched=%d", expired, watched)
        return {"expired": expired, "watched": watched}

    async def sweep_once(self, bookings, limit: int = 50) -> int:
        expired = 0
        for booking in await bookings.list_overdue(self._clock(), limit=limit):
            if await self.fire(booking.booking_id):
                expired += 1
        return expired

    async def sweep_loop(self, stop_event: asyncio.Event, bookings, interval: float = EXPIRY_SWEEP_SECONDS):
        while not stop_event.is_set():
            try:
                await self.sweep_once(bookings)
            except Exception as e:
                logger.error("deadline sweep failed: %s", e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def close(self):
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
