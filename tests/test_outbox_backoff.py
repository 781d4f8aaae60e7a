from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from splitledger.core.config import settings
from splitledger.db.models.outbox_message import MessageStatus, OutboxMessage
from splitledger.domain.services.notification_service import NotificationService
from splitledger.db.models.notification import NotificationType
from splitledger.domain.services.outbox_service import OutboxService, _calculate_backoff_seconds


def test_calculate_backoff_seconds_doubles() -> None:
    base = 30
    max_backoff = 3600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert _calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_calculate_backoff_seconds_degenerate_inputs() -> None:
    assert _calculate_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=3600) == 30
    assert _calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0
    assert _calculate_backoff_seconds(2, base_seconds=7200, max_backoff_seconds=3600) == 3600


async def _insert(db_session, **kwargs) -> OutboxMessage:
    msg = OutboxMessage(
        recipient_id=kwargs.pop("recipient_id", "bob"),
        message_type="split_invite",
        message_content={"title": "t", "body": "b"},
        status=kwargs.pop("status", MessageStatus.PENDING),
        **kwargs,
    )
    db_session.add(msg)
    await db_session.commit()
    await db_session.refresh(msg)
    return msg


@pytest.mark.asyncio
async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session) -> None:
    # A huge retry_count must not build 2**retry_count
    msg = await _insert(db_session, retry_count=10_000, max_retries=20_000)

    svc = OutboxService(db_session)
    before = datetime.utcnow()
    await svc.mark_as_failed(msg.id, "boom")
    after = datetime.utcnow()

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.PENDING
    assert msg.next_retry_at is not None

    max_backoff = settings.OUTBOX_MAX_BACKOFF_SECONDS
    lower = before + timedelta(seconds=max_backoff) - timedelta(seconds=2)
    upper = after + timedelta(seconds=max_backoff) + timedelta(seconds=2)
    assert lower <= msg.next_retry_at <= upper


@pytest.mark.asyncio
async def test_mark_as_failed_gives_up_at_max_retries(db_session) -> None:
    msg = await _insert(db_session, retry_count=4, max_retries=5)

    await OutboxService(db_session).mark_as_failed(msg.id, "gateway down")

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.FAILED
    assert msg.processed_at is not None
    assert msg.last_error == "gateway down"


@pytest.mark.asyncio
async def test_pending_messages_skip_backoff_window(db_session) -> None:
    ready = await _insert(db_session, recipient_id="ready")
    await _insert(db_session, recipient_id="later", next_retry_at=datetime.utcnow() + timedelta(minutes=5))
    await _insert(db_session, recipient_id="done", status=MessageStatus.SENT)

    pending = await OutboxService(db_session).get_pending_messages()

    assert [m.id for m in pending] == [ready.id]


@pytest.mark.asyncio
async def test_cleanup_deletes_only_old_sent(db_session) -> None:
    await _insert(db_session, status=MessageStatus.SENT, processed_at=datetime.utcnow() - timedelta(days=60))
    recent = await _insert(db_session, status=MessageStatus.SENT, processed_at=datetime.utcnow() - timedelta(days=5))
    failed = await _insert(db_session, status=MessageStatus.FAILED, processed_at=datetime.utcnow() - timedelta(days=60))

    deleted = await OutboxService(db_session).cleanup_old_messages(days=30)

    assert deleted == 1
    remaining = (await db_session.execute(select(OutboxMessage.id))).scalars().all()
    assert sorted(remaining) == sorted([recent.id, failed.id])


@pytest.mark.asyncio
async def test_notify_queues_push_in_same_unit(db_session) -> None:
    service = NotificationService(db_session)

    await service.notify(
        user_id="bob",
        type=NotificationType.DEPOSIT_RECEIVED,
        title="Deposit Received",
        message="$5.00 was added to your wallet",
        metadata={"amount": "5.00"},
    )
    await db_session.commit()

    [msg] = (await db_session.execute(select(OutboxMessage))).scalars().all()
    assert msg.recipient_id == "bob"
    assert msg.message_type == "deposit_received"
    assert msg.message_content["body"] == "$5.00 was added to your wallet"
    assert msg.message_content["data"]["amount"] == "5.00"


@pytest.mark.asyncio
async def test_duplicate_dedup_key_notifies_once(db_session) -> None:
    service = NotificationService(db_session)

    first = await service.notify(
        user_id="alice",
        type=NotificationType.SPLIT_COMPLETED,
        title="Split Complete!",
        message="done",
        dedup_key="split_completed:evt",
    )
    second = await service.notify(
        user_id="alice",
        type=NotificationType.SPLIT_COMPLETED,
        title="Split Complete!",
        message="done",
        dedup_key="split_completed:evt",
    )
    await db_session.commit()

    assert first is not None
    assert second is None
    messages = (await db_session.execute(select(OutboxMessage))).scalars().all()
    assert len(messages) == 1
