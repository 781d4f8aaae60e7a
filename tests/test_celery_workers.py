"""
Celery workers: outbox delivery through the push gateway, reminder sweep,
outbox cleanup, the in-flight settlement sweep and event loop handling.
"""
import asyncio
import json
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.circuit_breaker import get_push_circuit_breaker
from splitledger.core.exceptions import PaymentPendingError
from splitledger.db.models.outbox_message import MessageStatus, OutboxMessage
from splitledger.db.models.split_event import ParticipantStatus
from splitledger.domain.services.rails import RailResult, RailStatus
from splitledger.domain.services.settlement_service import SettlementService
from splitledger.domain.services.split_service import SplitService
from splitledger.workers import tasks


# ============================================================================
# Helpers
# ============================================================================

@contextmanager
def _capture_run_async():
    """
    Celery tasks are sync and hand their coroutine to run_async, which needs
    its own loop. Capture the coroutine instead so the test awaits it.
    """
    captured = []
    with patch("splitledger.workers.tasks.run_async", side_effect=captured.append):
        yield captured


@contextmanager
def _use_session(db_session: AsyncSession):
    @asynccontextmanager
    async def _session():
        yield db_session

    with patch("splitledger.workers.tasks.get_task_session", _session):
        yield


@contextmanager
def _push_gateway(handler):
    """Route the push client through httpx.MockTransport"""
    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    with patch("splitledger.workers.tasks.httpx.AsyncClient", _client):
        yield


async def _insert_outbox(
    db: AsyncSession,
    *,
    recipient_id: str = "bob",
    status: MessageStatus = MessageStatus.PENDING,
    processed_at: datetime | None = None,
) -> OutboxMessage:
    msg = OutboxMessage(
        recipient_id=recipient_id,
        message_type="split_invite",
        message_content={"title": "New Split Request", "body": "Alice invited you", "data": {"type": "split_invite"}},
        status=status,
        processed_at=processed_at,
    )
    db.add(msg)
    await db.commit()
    await db.refresh(msg)
    return msg


# ============================================================================
# Push gateway
# ============================================================================

class TestSendPush:

    @pytest.mark.asyncio
    async def test_send_push_success(self) -> None:
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        with _push_gateway(handler):
            ok = await tasks._send_push("bob", {"title": "Hi", "body": "There", "data": {"x": 1}})

        assert ok is True
        assert seen[0].url.path == "/send"
        assert json.loads(seen[0].content) == {
            "user_id": "bob", "title": "Hi", "body": "There", "data": {"x": 1},
        }

    @pytest.mark.asyncio
    async def test_send_push_failure_returns_false(self) -> None:
        with _push_gateway(lambda request: httpx.Response(500)):
            ok = await tasks._send_push("bob", {"title": "Hi"})

        assert ok is False
        assert get_push_circuit_breaker()._failures == 1

    @pytest.mark.asyncio
    async def test_send_push_network_error_returns_false(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _push_gateway(handler):
            ok = await tasks._send_push("bob", {"title": "Hi"})

        assert ok is False

    @pytest.mark.asyncio
    async def test_open_breaker_skips_gateway(self) -> None:
        breaker = get_push_circuit_breaker()
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        calls = []

        with _push_gateway(lambda request: calls.append(request) or httpx.Response(200)):
            ok = await tasks._send_push("bob", {"title": "Hi"})

        assert ok is False
        assert calls == []


# ============================================================================
# Outbox processing
# ============================================================================

class TestProcessOutbox:

    @pytest.mark.asyncio
    async def test_sent_messages_are_marked(self, db_session: AsyncSession) -> None:
        msg = await _insert_outbox(db_session)

        with patch("splitledger.workers.tasks._send_push", AsyncMock(return_value=True)) as send:
            results = await tasks.process_outbox(db_session)

        assert results == [{"message_id": msg.id, "success": True, "result": "Message sent successfully"}]
        send.assert_awaited_once_with("bob", msg.message_content)
        await db_session.refresh(msg)
        assert msg.status == MessageStatus.SENT
        assert msg.processed_at is not None

    @pytest.mark.asyncio
    async def test_failed_send_schedules_retry(self, db_session: AsyncSession) -> None:
        msg = await _insert_outbox(db_session)

        with patch("splitledger.workers.tasks._send_push", AsyncMock(return_value=False)):
            results = await tasks.process_outbox(db_session)

        assert results[0]["success"] is False
        await db_session.refresh(msg)
        assert msg.status == MessageStatus.PENDING
        assert msg.retry_count == 1
        assert msg.next_retry_at > datetime.utcnow()

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_failed(self, db_session: AsyncSession) -> None:
        msg = await _insert_outbox(db_session)

        with patch("splitledger.workers.tasks._send_push", AsyncMock(side_effect=RuntimeError("boom"))):
            results = await tasks.process_outbox(db_session)

        assert results[0] == {"message_id": msg.id, "success": False, "result": "boom"}
        await db_session.refresh(msg)
        assert msg.last_error == "boom"

    @pytest.mark.asyncio
    async def test_process_outbox_messages_task(self, db_session: AsyncSession) -> None:
        await _insert_outbox(db_session)
        await _insert_outbox(db_session, recipient_id="carol")

        with _capture_run_async() as captured, _use_session(db_session), \
             patch("splitledger.workers.tasks._send_push", AsyncMock(return_value=True)):
            tasks.process_outbox_messages()
            results = await captured[0]

        assert [r["success"] for r in results] == [True, True]

    @pytest.mark.asyncio
    async def test_send_message_task_unknown_id(self, db_session: AsyncSession) -> None:
        with _capture_run_async() as captured, _use_session(db_session):
            tasks.send_message(9999)
            result = await captured[0]

        assert result == {"error": "Message not found"}


# ============================================================================
# Periodic tasks
# ============================================================================

class TestPeriodicTasks:

    @pytest.mark.asyncio
    async def test_send_split_reminders_task(self, db_session: AsyncSession, split_factory) -> None:
        await split_factory("alice", ["bob"], total="20.00")

        with _capture_run_async() as captured, _use_session(db_session):
            tasks.send_split_reminders()
            result = await captured[0]

        assert result == {"sent": 1}

    @pytest.mark.asyncio
    async def test_cleanup_old_messages_task(self, db_session: AsyncSession) -> None:
        await _insert_outbox(db_session, status=MessageStatus.SENT, processed_at=datetime.utcnow() - timedelta(days=60))
        kept = await _insert_outbox(db_session, status=MessageStatus.SENT, processed_at=datetime.utcnow() - timedelta(days=5))

        with _capture_run_async() as captured, _use_session(db_session):
            tasks.cleanup_old_messages()
            result = await captured[0]

        assert result == {"deleted": 1}
        remaining = (await db_session.execute(select(OutboxMessage.id))).scalars().all()
        assert remaining == [kept.id]

    @pytest.mark.asyncio
    async def test_resolve_in_flight_settlements_task(
        self, db_session: AsyncSession, split_factory, wallet_factory, bank_rail
    ) -> None:
        await wallet_factory("bob", balance="0.00", bank_connected=True)
        event = await split_factory("alice", ["bob"], total="40.00")
        splits = SplitService(db_session)
        await splits.respond("bob", event.id, accept=True)

        bank_rail.settle_result = None
        with pytest.raises(PaymentPendingError):
            await SettlementService(db_session).pay_share("bob", event.id)

        participant = SplitService.find_participant(await splits.get_event(event.id), "bob")
        participant.settling_since = datetime.utcnow() - timedelta(hours=1)
        await db_session.commit()

        bank_rail.settle_result = RailResult(status=RailStatus.SUCCEEDED, id="pay_1", raw_status="AcceptedSettlementCompleted")
        with _capture_run_async() as captured, _use_session(db_session):
            tasks.resolve_in_flight_settlements()
            result = await captured[0]

        assert result == {"resolved": 1, "pending": 0, "failed": 0}
        participant = SplitService.find_participant(await splits.get_event(event.id), "bob")
        assert participant.status == ParticipantStatus.PAID
        assert len(bank_rail.payments) == 1

    @pytest.mark.asyncio
    async def test_fresh_in_flight_settlement_is_left_to_the_payer(
        self, db_session: AsyncSession, split_factory, wallet_factory, bank_rail
    ) -> None:
        await wallet_factory("bob", balance="0.00", bank_connected=True)
        event = await split_factory("alice", ["bob"], total="40.00")
        await SplitService(db_session).respond("bob", event.id, accept=True)

        bank_rail.settle_result = None
        with pytest.raises(PaymentPendingError):
            await SettlementService(db_session).pay_share("bob", event.id)

        result = await tasks.resolve_settlements(db_session)

        assert result == {"resolved": 0, "pending": 0, "failed": 0}
        assert bank_rail.polled == ["pay_1"]


# ============================================================================
# Event loop handling
# ============================================================================

class TestEventLoopManagement:

    def test_get_event_loop_creates_and_closes(self) -> None:
        with patch("splitledger.core.redis_client.close_redis", AsyncMock()):
            with tasks.get_event_loop() as loop:
                assert isinstance(loop, asyncio.AbstractEventLoop)
                assert not loop.is_closed()
        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        async def _answer():
            return 42

        with patch("splitledger.core.redis_client.close_redis", AsyncMock()):
            assert tasks.run_async(_answer()) == 42
