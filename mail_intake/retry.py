"""Reconnect-and-retry policy for mail operations that time out."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .errors import MailTimeout

if TYPE_CHECKING:
    from .imap_session import MailSession

logger = structlog.get_logger()

T = TypeVar("T")


class TimeoutRetryPolicy:
    """Retry a timed-out mail operation after reconnecting the session.

    The retry budget is shared by every call made through one policy
    instance, so a batch that owns one policy gets at most ``max_retries``
    reconnects in total.  Only :class:`MailTimeout` is retried; once the
    budget is spent the timeout propagates to the caller.
    """

    def __init__(self, max_retries: int = 1) -> None:
        self.max_retries = max_retries
        self.retries_used = 0

    @property
    def remaining(self) -> int:
        return max(self.max_retries - self.retries_used, 0)

    async def run(self, session: MailSession, operation: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(1 + self.remaining),
            retry=retry_if_exception_type(MailTimeout),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.retries_used += 1
                    logger.warning(
                        "mail_timeout_retrying",
                        mailbox=session.mailbox,
                        retries_used=self.retries_used,
                        max_retries=self.max_retries,
                    )
                    await session.reconnect()
                result = await operation()
        return result
