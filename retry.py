import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

import requests

from errors import PaymentGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (requests.RequestException, PaymentGatewayError)


class RetryPolicy:
    """Bounded retries with exponential backoff and a per-attempt timeout.

    `operation` is called with the attempt timeout in seconds. A timeout or
    any retryable error counts as a failed attempt; the error from the last
    attempt is re-raised once attempts are exhausted.
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float = 10.0,
        retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.retry_on = retry_on
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def call(self, operation: Callable[[float], T], description: str, request_id: Optional[str] = None) -> T:
        for attempt in range(1, self.attempts + 1):
            try:
                return operation(self.timeout)
            except self.retry_on as exc:
                logger.warning(
                    "[%s] %s attempt %d/%d failed: %s",
                    request_id, description, attempt, self.attempts, exc,
                )
                if attempt == self.attempts:
                    raise
                self.sleep(self.delay_for(attempt))


class AttemptBudget:
    """Wall-clock allowance for one attempt, shared by every request it makes.

    requests applies its timeout to each connect and each read separately, so
    every request in an attempt is handed only what is left of the budget.
    A single read that keeps trickling bytes can still overrun it.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.deadline = clock() + seconds

    def remaining(self) -> float:
        left = self.deadline - self.clock()
        if left <= 0:
            raise requests.Timeout("Attempt time budget exhausted")
        return left
