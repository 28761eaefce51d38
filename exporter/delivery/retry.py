"""
Bounded retry loop with a fixed delay between attempts
"""

from dataclasses import dataclass
from typing import Awaitable, Callable
from schemas.delivery import DeliveryOutcome
import asyncio
import logging

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    At most ``max_attempts`` attempts, sleeping ``interval_seconds`` between
    them. ``sleep`` is injectable so tests can run with zero delay.

    A circuit-open outcome ends the loop at once: the breaker already
    decides when the endpoint may be called again.
    """

    max_attempts: int = 3
    interval_seconds: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def run(self, attempt: Callable[[], Awaitable[DeliveryOutcome]], description: str = "") -> DeliveryOutcome:
        outcome = DeliveryOutcome.failed(0, "No attempt made")

        for attempt_no in range(1, self.max_attempts + 1):
            outcome = await attempt()

            if outcome.success:
                if attempt_no > 1:
                    logger.info(f"Delivered on attempt {attempt_no}: {description}")
                return outcome

            logger.warning(
                f"Delivery attempt {attempt_no}/{self.max_attempts} failed for {description}: "
                f"{outcome.describe()}"
            )

            if outcome.circuit_open:
                break

            if attempt_no < self.max_attempts:
                await self.sleep(self.interval_seconds)

        return outcome
