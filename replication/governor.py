"""
Rate governor: token bucket plus per-operation circuit breakers.

Every upstream call goes through one shared RateGovernor. The bucket keeps
the request rate under the upstream quota; one circuit breaker per operation
class ("entity_fetch", "media_fetch", "metadata_fetch") stops hammering an
endpoint that keeps failing.

Breaker states:
    CLOSED     calls pass, consecutive genuine failures are counted
    OPEN       calls are rejected with CircuitOpenError until reset_timeout
    HALF_OPEN  a limited number of trial calls decide between CLOSED and OPEN

Throttling (429), timeouts and 404s are neutral outcomes: they release a
half-open trial slot but never count toward opening the circuit.
"""

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from core.config import Settings, settings as default_settings
from core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

ENTITY_FETCH = "entity_fetch"
MEDIA_FETCH = "media_fetch"
METADATA_FETCH = "metadata_fetch"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class TokenBucket:
    """
    Token bucket rate limiter.

    The lock is held while a caller waits for refill, so waiters are served
    one at a time in the order they queued on the lock.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self):
        """Block until one token is available, then consume it"""
        async with self._lock:
            self._refill()
            while self._tokens < 1.0:
                await self._sleep((1.0 - self._tokens) / self.rate)
                self._refill()
            self._tokens -= 1.0


class CircuitBreaker:
    """Circuit breaker for one upstream operation class"""

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        success_threshold: int = 2,
        clock: Clock = time.monotonic
    ):
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self.success_threshold = success_threshold
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self._half_open_in_flight = 0
        self._lock = asyncio.Lock()

    def _retry_after(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        remaining = self.reset_timeout - (self._clock() - self.last_failure_time)
        return max(0.0, remaining)

    def _transition(self, new_state: CircuitState):
        if new_state == self.state:
            return
        logger.info(f"Circuit '{self.name}': {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state == CircuitState.CLOSED:
            self.failure_count = 0
            self.success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self.success_count = 0
            self._half_open_in_flight = 0
        elif new_state == CircuitState.OPEN:
            self.success_count = 0
            self._half_open_in_flight = 0

    async def before_call(self):
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open or the half-open trial
                slots are taken
        """
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._retry_after() > 0:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is open",
                        context={"operation": self.name, "failures": self.failure_count},
                        retry_after=self._retry_after()
                    )
                self._transition(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is half-open and at trial capacity",
                        context={"operation": self.name},
                        retry_after=1.0
                    )
                self._half_open_in_flight += 1

    async def record_success(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    async def record_failure(self):
        async with self._lock:
            self.last_failure_time = self._clock()
            if self.state == CircuitState.HALF_OPEN:
                self.failure_count += 1
                logger.warning(f"Circuit '{self.name}': trial call failed, reopening")
                self._transition(CircuitState.OPEN)
                return

            self.failure_count += 1
            if self.state == CircuitState.CLOSED and self.failure_count >= self.threshold:
                logger.error(
                    f"Circuit '{self.name}' opened after {self.failure_count} consecutive failures"
                )
                self._transition(CircuitState.OPEN)

    async def record_neutral(self):
        """Release a trial slot without affecting the failure or success counts"""
        async with self._lock:
            self.release_trial()

    def release_trial(self):
        """
        Give back the trial slot of a call that ended without an outcome.

        Synchronous so it can run while a cancelled call unwinds.
        """
        if self.state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def snapshot(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "retry_after": round(self._retry_after(), 2) if self.state == CircuitState.OPEN else 0.0,
        }


class RateGovernor:
    """Process-wide rate limiter and circuit breaker registry"""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep
    ):
        self.config = config or default_settings
        self._clock = clock
        self._sleep = sleep
        self.bucket = TokenBucket(
            rate=self.config.RATE_LIMIT_PER_SECOND,
            capacity=self.config.RATE_LIMIT_BURST,
            clock=clock,
            sleep=sleep
        )
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, operation: str) -> CircuitBreaker:
        if operation not in self._breakers:
            self._breakers[operation] = CircuitBreaker(
                name=operation,
                threshold=self.config.CIRCUIT_BREAKER_THRESHOLD,
                reset_timeout=self.config.CIRCUIT_BREAKER_RESET_TIMEOUT,
                half_open_max_calls=self.config.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
                success_threshold=self.config.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
                clock=self._clock
            )
        return self._breakers[operation]

    async def acquire(self, operation: str):
        """Check the breaker for this operation, then take a rate token"""
        breaker = self.breaker(operation)
        await breaker.before_call()
        try:
            await self.bucket.acquire()
        except BaseException:
            breaker.release_trial()
            raise

    def release(self, operation: str):
        """Return the admission of a call that never produced an outcome"""
        self.breaker(operation).release_trial()

    async def record_success(self, operation: str):
        await self.breaker(operation).record_success()

    async def record_failure(self, operation: str):
        await self.breaker(operation).record_failure()

    async def record_neutral(self, operation: str):
        await self.breaker(operation).record_neutral()

    def backoff_delay(self, attempt: int) -> float:
        return self.config.RETRY_DELAY_BASE * (2 ** attempt)

    async def wait_for_throttle(
        self,
        operation: str,
        retry_after: Optional[float] = None,
        attempt: int = 0
    ) -> float:
        """
        Sleep after an upstream throttle response.

        Uses the server-provided wait when present, otherwise exponential
        backoff. Returns the number of seconds slept.
        """
        delay = retry_after if retry_after is not None and retry_after >= 0 else self.backoff_delay(attempt)
        logger.warning(f"Rate limited on {operation}, waiting {delay:.1f}s (attempt {attempt + 1})")
        await self._sleep(delay)
        return delay

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}
