import time

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    def __init__(self, name: str, retry_in: float):
        super().__init__(f"{name} is unavailable, retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """
    Guards one upstream (payment gateway, location service) for every
    booking-service worker at once: the breaker lives in Redis, not in the
    process.

    `failure_threshold` failures inside `failure_window_seconds` trip it.
    While tripped, callers fail fast for `reset_timeout_seconds`; after that
    calls go through again and the first outcome decides whether it closes
    or trips again.
    """

    def __init__(
        self,
        name: str,
        redis_client,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        failure_window_seconds: int = 60,
        clock=time.time,
    ):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self._clock = clock
        self._key = f"breaker:{name}"
        self._failures_key = f"breaker:{name}:failures"

    async def state(self) -> str:
        return await self.redis.hget(self._key, "state") or CLOSED

    async def allow_request(self) -> None:
        fields = await self.redis.hgetall(self._key)
        if fields.get("state") != OPEN:
            return

        tripped_at = float(fields.get("tripped_at") or 0)
        remaining = tripped_at + self.reset_timeout_seconds - self._clock()
        if remaining > 0:
            raise CircuitBreakerOpen(self.name, remaining)
        await self.redis.hset(self._key, "state", HALF_OPEN)

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.incr(self._failures_key)
        if failures == 1:
            # the window starts at the first failure
            await self.redis.expire(self._failures_key, self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        pipe = self.redis.pipeline()
        pipe.hset(self._key, mapping={"state": OPEN, "tripped_at": repr(self._clock())})
        pipe.expire(self._key, self.reset_timeout_seconds + self.failure_window_seconds)
        pipe.delete(self._failures_key)
        await pipe.execute()

    async def close(self) -> None:
        await self.redis.delete(self._key, self._failures_key)

    async def status(self) -> dict:
        failures = await self.redis.get(self._failures_key)
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
        }
