"""Tests for mail_intake.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from mail_intake.errors import MailSessionError, MailTimeout
from mail_intake.retry import TimeoutRetryPolicy


def _session() -> MagicMock:
    session = MagicMock()
    session.mailbox = "INBOX"
    session.reconnect = AsyncMock()
    return session


class TestTimeoutRetryPolicy:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        session = _session()
        policy = TimeoutRetryPolicy()
        operation = AsyncMock(return_value=b"ok")

        assert await policy.run(session, operation) == b"ok"
        assert operation.await_count == 1
        session.reconnect.assert_not_awaited()
        assert policy.retries_used == 0

    @pytest.mark.asyncio
    async def test_timeout_then_success_reconnects_once(self):
        session = _session()
        policy = TimeoutRetryPolicy()
        operation = AsyncMock(side_effect=[MailTimeout("fetch part", 1.0), b"ok"])

        assert await policy.run(session, operation) == b"ok"
        assert operation.await_count == 2
        session.reconnect.assert_awaited_once()
        assert policy.remaining == 0

    @pytest.mark.asyncio
    async def test_second_timeout_reraises(self):
        session = _session()
        policy = TimeoutRetryPolicy()
        operation = AsyncMock(side_effect=MailTimeout("fetch part", 1.0))

        with pytest.raises(MailTimeout):
            await policy.run(session, operation)
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_budget_shared_across_calls(self):
        session = _session()
        policy = TimeoutRetryPolicy(max_retries=1)
        first = AsyncMock(side_effect=[MailTimeout("fetch part", 1.0), b"one"])
        second = AsyncMock(side_effect=MailTimeout("fetch part", 1.0))

        assert await policy.run(session, first) == b"one"
        with pytest.raises(MailTimeout):
            await policy.run(session, second)
        assert second.await_count == 1
        session.reconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        session = _session()
        policy = TimeoutRetryPolicy()
        operation = AsyncMock(side_effect=MailSessionError("NO [UNAVAILABLE]"))

        with pytest.raises(MailSessionError):
            await policy.run(session, operation)
        assert operation.await_count == 1
        session.reconnect.assert_not_awaited()
