from __future__ import annotations

from abc import ABC, abstractmethod

from redis.asyncio import Redis

from signdesk.core.errors import RateLimitError
from signdesk.core.logging import get_logger
from signdesk.models.signing import Signatory, SigningRequest

logger = get_logger(__name__)

THROTTLE_PREFIX = "signdesk:reminder:"


class ReminderPolicy(ABC):
    @abstractmethod
    async def check(self, request: SigningRequest, signatory: Signatory) -> None:
        """
        Decide whether a reminder may go out now.

        Raises:
            RateLimitError: If the reminder is refused
        """


class AllowAllReminders(ReminderPolicy):
    async def check(self, request: SigningRequest, signatory: Signatory) -> None:
        return None


class RedisReminderThrottle(ReminderPolicy):
    """At most one reminder per signatory within the cooldown window."""

    def __init__(self, redis_client: Redis, cooldown_seconds: int):
        self.redis_client = redis_client
        self.cooldown_seconds = cooldown_seconds

    async def check(self, request: SigningRequest, signatory: Signatory) -> None:
        key = f"{THROTTLE_PREFIX}{signatory.id}"
        async with self.redis_client.pipeline(transaction=True) as pipe:  # type: ignore[attr-defined]
            pipe.set(key, 1, nx=True, ex=self.cooldown_seconds)
            (created,) = await pipe.execute()
        if not created:
            logger.info("reminder.throttled", signing_request_id=request.id, signatory_id=signatory.id)
            raise RateLimitError(
                f"a reminder was already sent to {signatory.email} in the last {self.cooldown_seconds} seconds"
            )
