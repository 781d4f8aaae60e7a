"""
Split lifecycle: create, respond, amend, re-invite, delete, read.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from splitledger.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundException,
    RateLimitedError,
    SplitNotFoundError,
    ValidationException,
)
from splitledger.db.models.notification import Notification, NotificationType
from splitledger.db.models.outbox_message import OutboxMessage
from splitledger.db.models.split_event import ParticipantStatus, SplitEvent, SplitType
from splitledger.domain.services.split_service import (
    ParticipantShare,
    SplitService,
    compute_equal_shares,
)

pytestmark = pytest.mark.unit


async def _notifications(db_session, user_id, type=None):
    query = select(Notification).where(Notification.user_id == user_id)
    if type is not None:
        query = query.where(Notification.type == type)
    result = await db_session.execute(query.order_by(Notification.id))
    return list(result.scalars().all())


def _by_user(event):
    return {p.user_id: p for p in event.participants}


# ============================================================================
# Equal shares
# ============================================================================

def test_equal_shares_sum_exactly():
    shares = compute_equal_shares(Decimal("100.00"), 3)
    assert shares == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
    assert sum(shares) == Decimal("100.00")


def test_equal_shares_even_split():
    assert compute_equal_shares(Decimal("90.00"), 3) == [Decimal("30.00")] * 3


# ============================================================================
# Create
# ============================================================================

async def test_create_equal_split(db_session, split_factory):
    event = await split_factory("alice", ["bob", "carol"], total="90.00")

    participants = _by_user(event)
    assert set(participants) == {"alice", "bob", "carol"}
    assert participants["alice"].is_creator
    assert participants["alice"].status == ParticipantStatus.PAID
    assert participants["bob"].status == ParticipantStatus.PENDING
    assert participants["bob"].last_invited_at is not None
    assert all(Decimal(p.amount) == Decimal("30.00") for p in event.participants)

    invites = await _notifications(db_session, "bob", NotificationType.SPLIT_INVITE)
    assert len(invites) == 1
    assert invites[0].title == "New Split Request"
    assert invites[0].split_event_id == event.id

    outbox = (await db_session.execute(select(OutboxMessage))).scalars().all()
    assert {m.recipient_id for m in outbox} == {"bob", "carol"}


async def test_create_equal_split_remainder_goes_to_creator_first(split_factory):
    event = await split_factory("alice", ["bob", "carol"], total="100.00")

    participants = _by_user(event)
    assert Decimal(participants["alice"].amount) == Decimal("33.34")
    assert Decimal(participants["bob"].amount) == Decimal("33.33")


async def test_create_specified_split_creator_covers_rest(split_factory):
    event = await split_factory(
        "alice",
        [("bob", "20.00"), ("carol", None)],
        total="50.00",
        split_type="specified",
    )

    participants = _by_user(event)
    assert Decimal(participants["bob"].amount) == Decimal("20.00")
    assert Decimal(participants["carol"].amount) == Decimal("0.00")
    assert Decimal(participants["alice"].amount) == Decimal("30.00")


async def test_create_specified_split_over_total_rejected(split_factory):
    with pytest.raises(ValidationException):
        await split_factory(
            "alice",
            [("bob", "40.00"), ("carol", "20.00")],
            total="50.00",
            split_type="specified",
        )


@pytest.mark.parametrize(
    "participants",
    [
        [],
        ["alice"],
        ["bob", "bob"],
        ["bad id with spaces"],
    ],
)
async def test_create_rejects_bad_participants(split_factory, participants):
    with pytest.raises(ValidationException):
        await split_factory("alice", participants)


async def test_create_rejects_script_in_name(split_factory):
    with pytest.raises(ValidationException):
        await split_factory(name="<script>alert(1)</script>")


async def test_sixth_split_in_an_hour_is_throttled(db_session, split_factory):
    for i in range(5):
        await split_factory(name=f"Split {i}")

    with pytest.raises(RateLimitedError) as exc_info:
        await split_factory(name="One too many")

    assert exc_info.value.reason == "split_hourly_limit"
    assert 0 < exc_info.value.retry_after_seconds <= 3600
    count = len((await db_session.execute(select(SplitEvent))).scalars().all())
    assert count == 5


# ============================================================================
# Respond / amend
# ============================================================================

async def test_accept_notifies_creator(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)

    participant = await service.respond("bob", event.id, accept=True, user_name="Bob")

    assert participant.status == ParticipantStatus.ACCEPTED
    assert participant.responded_at is not None
    accepted = await _notifications(db_session, "alice", NotificationType.SPLIT_ACCEPTED)
    assert accepted[0].message == "Bob accepted your split for Dinner"


async def test_decline_then_accept_is_invalid(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)

    await service.respond("bob", event.id, accept=False)
    with pytest.raises(InvalidTransitionError):
        await service.respond("bob", event.id, accept=True)

    declined = await _notifications(db_session, "alice", NotificationType.SPLIT_DECLINED)
    assert len(declined) == 1


async def test_non_participant_sees_not_found(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(SplitNotFoundError):
        await SplitService(db_session).respond("mallory", event.id, accept=True)


async def test_creator_cannot_respond(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(InvalidTransitionError):
        await SplitService(db_session).respond("alice", event.id, accept=True)


async def test_accept_specified_with_amount(db_session, split_factory):
    event = await split_factory("alice", [("bob", None)], total="50.00", split_type="specified")
    service = SplitService(db_session)

    participant = await service.respond("bob", event.id, accept=True, amount=Decimal("15.00"))

    assert Decimal(participant.amount) == Decimal("15.00")
    assert participant.status == ParticipantStatus.ACCEPTED


async def test_accept_equal_with_amount_rejected(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(ValidationException):
        await SplitService(db_session).respond("bob", event.id, accept=True, amount=Decimal("5.00"))


async def test_set_own_amount_on_specified_split(db_session, split_factory):
    event = await split_factory("alice", [("bob", None)], total="50.00", split_type="specified")
    service = SplitService(db_session)

    participant = await service.set_own_amount("bob", event.id, Decimal("12.50"))
    assert Decimal(participant.amount) == Decimal("12.50")


async def test_set_own_amount_rejected_on_equal_split(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(ValidationException):
        await SplitService(db_session).set_own_amount("bob", event.id, Decimal("12.50"))


async def test_set_own_amount_cannot_exceed_total(db_session, split_factory):
    event = await split_factory("alice", [("bob", "10.00"), ("carol", None)], total="50.00", split_type="specified")
    with pytest.raises(ValidationException):
        await SplitService(db_session).set_own_amount("carol", event.id, Decimal("40.01"))


# ============================================================================
# Re-invite
# ============================================================================

async def test_reinvite_declined_after_cooldown(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)
    declined = await service.respond("bob", event.id, accept=False)
    declined.last_invited_at = declined.last_invited_at - timedelta(hours=25)
    await db_session.commit()

    participant = await service.reinvite("alice", event.id, "bob", creator_name="Alice")

    assert participant.status == ParticipantStatus.PENDING
    assert participant.responded_at is None
    invites = await _notifications(db_session, "bob", NotificationType.SPLIT_INVITE)
    assert len(invites) == 2


async def test_reinvite_within_cooldown_is_rate_limited(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)
    await service.respond("bob", event.id, accept=False)

    with pytest.raises(RateLimitedError) as exc_info:
        await service.reinvite("alice", event.id, "bob")

    assert exc_info.value.reason == "reinvite_cooldown"


async def test_reinvite_by_non_creator_forbidden(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(ForbiddenError):
        await SplitService(db_session).reinvite("carol", event.id, "bob")


async def test_reinvite_unknown_participant(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(NotFoundException):
        await SplitService(db_session).reinvite("alice", event.id, "zoe")


async def test_reinvite_accepted_participant_invalid(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)
    await service.respond("bob", event.id, accept=True)

    with pytest.raises(InvalidTransitionError):
        await service.reinvite("alice", event.id, "bob")


# ============================================================================
# Delete
# ============================================================================

async def test_delete_split_notifies_others(db_session, split_factory):
    event = await split_factory()
    event_id = event.id
    service = SplitService(db_session)

    await service.delete_split("alice", event_id, creator_name="Alice")

    with pytest.raises(SplitNotFoundError):
        await service.get_event(event_id)
    cancelled = await _notifications(db_session, "bob", NotificationType.SPLIT_CANCELLED)
    assert len(cancelled) == 1
    assert cancelled[0].split_event_id is None
    assert cancelled[0].meta["split_event_id"] == event_id
    # invites tied to the event are gone
    assert await _notifications(db_session, "bob", NotificationType.SPLIT_INVITE) == []


async def test_delete_by_participant_forbidden(db_session, split_factory):
    event = await split_factory()
    with pytest.raises(ForbiddenError):
        await SplitService(db_session).delete_split("bob", event.id)


# ============================================================================
# Reads
# ============================================================================

async def test_list_splits_for_user(db_session, split_factory):
    first = await split_factory("alice", ["bob"], name="Lunch")
    await split_factory("carol", ["dave"], name="Taxi")

    splits = await SplitService(db_session).list_splits_for_user("bob")

    assert [s.id for s in splits] == [first.id]


async def test_get_split_visibility(db_session, split_factory):
    event = await split_factory()
    service = SplitService(db_session)

    assert (await service.get_split(event.id, "carol")).id == event.id
    with pytest.raises(SplitNotFoundError):
        await service.get_split(event.id, "mallory")


async def test_split_type_enum_stored(split_factory):
    event = await split_factory(split_type="specified", participants=[("bob", "10.00")], total="30.00")
    assert SplitType(event.split_type) == SplitType.SPECIFIED
