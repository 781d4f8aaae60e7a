"""
Split Service - split event lifecycle

Create, respond, amend, re-invite, delete and read split events. Every
operation validates first, runs the participant state machine, writes
notifications and commits once. Payments live in SettlementService.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from splitledger.core.config import settings
from splitledger.core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundException,
    SplitNotFoundError,
    ValidationException,
)
from splitledger.core.logging import get_logger, log_async_operation
from splitledger.core.validation import (
    AmountValidator,
    SplitNameValidator,
    TextSanitizer,
    UserIdValidator,
    CENT,
    ZERO,
    to_money,
)
from splitledger.db.database import utcnow
from splitledger.db.models.notification import Notification, NotificationType
from splitledger.db.models.split_event import (
    ParticipantStatus,
    SplitEvent,
    SplitParticipant,
    SplitType,
)
from splitledger.domain.services import abuse_policy
from splitledger.domain.services.notification_service import NotificationService, completion_dedup_key
from splitledger.domain.services.receipt_storage import ReceiptStorage
from splitledger.state_machine.manager import ParticipantStateMachine
from splitledger.state_machine.states import AMOUNT_EDITABLE_STATUSES

logger = get_logger(__name__)


@dataclass
class ParticipantShare:
    user_id: str
    amount: Optional[Decimal] = None


def compute_equal_shares(total: Decimal, count: int) -> list[Decimal]:
    """
    Split ``total`` into ``count`` cent amounts that sum exactly to it.
    The leftover cents go one each to the first participants.
    """
    if count < 1:
        raise ValidationException("A split needs at least one participant", field="participants")
    cents = int((total / CENT).to_integral_value())
    base, remainder = divmod(cents, count)
    return [(Decimal(base + (1 if i < remainder else 0)) * CENT).quantize(CENT) for i in range(count)]


class SplitService:
    """Split event state machine operations"""

    def __init__(
        self,
        db: AsyncSession,
        receipts: ReceiptStorage | None = None,
    ):
        self.db = db
        self.notifications = NotificationService(db)
        self.receipts = receipts or ReceiptStorage()

    # ==================== Loading ====================

    async def get_event(self, event_id: str, for_update: bool = False) -> SplitEvent:
        query = (
            select(SplitEvent)
            .where(SplitEvent.id == event_id)
            .options(selectinload(SplitEvent.participants))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        event = result.scalar_one_or_none()
        if event is None:
            raise SplitNotFoundError(event_id)
        return event

    @staticmethod
    def find_participant(event: SplitEvent, user_id: str) -> Optional[SplitParticipant]:
        for participant in event.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def require_participant(self, event: SplitEvent, user_id: str) -> SplitParticipant:
        participant = self.find_participant(event, user_id)
        if participant is None:
            # Non-participants cannot learn that the event exists
            raise SplitNotFoundError(event.id)
        return participant

    async def reserved_wallet_amount(self, user_id: str, exclude_event_id: str | None = None) -> Decimal:
        """Wallet money earmarked by the user's in-flight external split payments"""
        query = select(func.coalesce(func.sum(SplitParticipant.settling_wallet_amount), 0)).where(
            SplitParticipant.user_id == user_id,
            SplitParticipant.settling_rail.isnot(None),
        )
        if exclude_event_id is not None:
            query = query.where(SplitParticipant.split_event_id != exclude_event_id)
        result = await self.db.execute(query)
        return to_money(result.scalar_one())

    # ==================== Create ====================

    def _build_shares(
        self,
        creator_id: str,
        total: Decimal,
        split_type: SplitType,
        participants: Sequence[ParticipantShare],
    ) -> list[ParticipantShare]:
        seen: set[str] = set()
        for share in participants:
            if not UserIdValidator.validate(share.user_id):
                raise ValidationException(f"Invalid participant id: {share.user_id!r}", field="participants")
            if share.user_id in seen:
                raise ValidationException(f"Duplicate participant: {share.user_id}", field="participants")
            seen.add(share.user_id)

        others = [s for s in participants if s.user_id != creator_id]

        if not others:
            raise ValidationException("Add at least one person to split with", field="participants")
        if len(others) + 1 > settings.SPLIT_MAX_PARTICIPANTS:
            raise ValidationException(
                f"A split can have at most {settings.SPLIT_MAX_PARTICIPANTS} participants",
                field="participants",
            )

        if split_type == SplitType.EQUAL:
            ordered = [creator_id] + [s.user_id for s in others]
            amounts = compute_equal_shares(total, len(ordered))
            return [ParticipantShare(user_id, amount) for user_id, amount in zip(ordered, amounts)]

        resolved: list[ParticipantShare] = []
        for share in others:
            amount = ZERO
            if share.amount is not None:
                amount = AmountValidator.require(share.amount, field="participants.amount", min_value=ZERO)
            resolved.append(ParticipantShare(share.user_id, amount))

        known = sum((s.amount for s in resolved), ZERO)
        if known > total:
            raise ValidationException(
                f"Participant amounts (${known}) exceed the total (${total})",
                field="participants",
            )
        # On specified splits the creator's share is always the remainder
        return [ParticipantShare(creator_id, total - known)] + resolved

    @log_async_operation("create_split")
    async def create_split(
        self,
        creator_id: str,
        name: str,
        total_amount,
        split_type: SplitType | str,
        participants: Sequence[ParticipantShare],
        receipt: str | None = None,
        creator_name: str | None = None,
    ) -> SplitEvent:
        """
        Create a split event with all participant rows and send invites.

        Raises:
            ValidationException: bad name, amount, participants or receipt
            RateLimitedError: creator over the hourly/daily split throttle
        """
        is_valid, error = SplitNameValidator.validate(name)
        if not is_valid:
            raise ValidationException(error, field="name")
        name = TextSanitizer.sanitize(name, max_length=SplitNameValidator.MAX_LENGTH)
        total = AmountValidator.require(total_amount, field="total_amount")
        try:
            split_type = SplitType(split_type)
        except ValueError:
            raise ValidationException(f"Unknown split type: {split_type}", field="split_type")

        shares = self._build_shares(creator_id, total, split_type, participants)

        now = utcnow()
        await abuse_policy.check_split_creation(self.db, creator_id, now)

        receipt_url = await self.receipts.store(receipt) if receipt else None

        event = SplitEvent(
            name=name,
            total_amount=total,
            split_type=split_type,
            receipt_url=receipt_url,
            creator_id=creator_id,
            created_at=now,
        )
        for share in shares:
            is_creator = share.user_id == creator_id
            event.participants.append(SplitParticipant(
                user_id=share.user_id,
                amount=share.amount,
                is_creator=is_creator,
                status=ParticipantStatus.PAID if is_creator else ParticipantStatus.PENDING,
                responded_at=now if is_creator else None,
                paid_at=now if is_creator else None,
                last_invited_at=None if is_creator else now,
            ))
        self.db.add(event)
        await self.db.flush()

        for share in shares[1:]:
            await self._send_invite(event, share.user_id, share.amount, creator_name)

        await self.db.commit()

        logger.info(
            "Split created",
            extra_data={
                "split_event_id": event.id,
                "creator_id": creator_id,
                "total_amount": total,
                "split_type": split_type.value,
                "participants": len(shares),
            }
        )
        return await self.get_event(event.id)

    async def _send_invite(
        self,
        event: SplitEvent,
        user_id: str,
        amount: Decimal,
        creator_name: str | None,
        again: bool = False,
    ) -> None:
        who = creator_name or "Someone"
        if amount and amount > ZERO:
            message = f"{who} invited you to split ${amount} for {event.name}"
        else:
            message = f"{who} wants to split {event.name}"
        if again:
            message = f"Reminder: {message}"
        await self.notifications.notify(
            user_id=user_id,
            type=NotificationType.SPLIT_INVITE,
            title="New Split Request",
            message=message,
            split_event_id=event.id,
            metadata={
                "split_type": SplitType(event.split_type).value,
                "amount": str(amount),
                "creator_name": creator_name,
            },
        )

    # ==================== Respond / amend ====================

    def _apply_amount(self, event: SplitEvent, participant: SplitParticipant, amount: Decimal) -> None:
        """Set a non-creator's share and hand the creator what is left of the total"""
        total = Decimal(event.total_amount)
        others = sum(
            (Decimal(p.amount) for p in event.participants if not p.is_creator and p.id != participant.id),
            ZERO,
        )
        if others + amount > total:
            raise ValidationException(
                f"Amount would bring the split to ${others + amount}, above its total of ${total}",
                field="amount",
            )
        participant.amount = amount
        for p in event.participants:
            if p.is_creator:
                p.amount = total - others - amount

    @log_async_operation("respond_to_split")
    async def respond(
        self,
        user_id: str,
        event_id: str,
        accept: bool,
        amount=None,
        user_name: str | None = None,
    ) -> SplitParticipant:
        """
        Accept or decline an invite.

        Raises:
            SplitNotFoundError: no such event or caller not a participant
            InvalidTransitionError: creator, or not pending
            ValidationException: bad amount
        """
        event = await self.get_event(event_id, for_update=True)
        participant = self.require_participant(event, user_id)

        target = ParticipantStatus.ACCEPTED if accept else ParticipantStatus.DECLINED

        if accept and amount is not None:
            value = AmountValidator.require(amount)
            if SplitType(event.split_type) != SplitType.SPECIFIED:
                raise ValidationException("Equal split amounts are fixed", field="amount")
            if Decimal(participant.amount) > ZERO and Decimal(participant.amount) != value:
                raise ValidationException("Your amount is already set for this split", field="amount")
            ParticipantStateMachine.transition(participant, target)
            self._apply_amount(event, participant, value)
        else:
            ParticipantStateMachine.transition(participant, target)

        verb = "accepted" if accept else "declined"
        await self.notifications.notify(
            user_id=event.creator_id,
            type=NotificationType.SPLIT_ACCEPTED if accept else NotificationType.SPLIT_DECLINED,
            title="Split Accepted" if accept else "Split Declined",
            message=f"{user_name or 'Someone'} {verb} your split for {event.name}",
            split_event_id=event.id,
            metadata={"participant_id": user_id},
        )
        await self.db.commit()

        logger.info(
            f"Split {verb}",
            extra_data={"split_event_id": event.id, "user_id": user_id, "status": target.value},
        )
        return participant

    @log_async_operation("set_own_amount")
    async def set_own_amount(self, user_id: str, event_id: str, amount) -> SplitParticipant:
        """
        Set the caller's owed amount on a specified split, before payment.

        Raises:
            ValidationException: equal split, or amount too large for the total
            InvalidTransitionError: already paid or declined, or a payment is in flight
        """
        value = AmountValidator.require(amount)
        event = await self.get_event(event_id, for_update=True)
        participant = self.require_participant(event, user_id)

        if SplitType(event.split_type) != SplitType.SPECIFIED:
            raise ValidationException("Amounts can only be changed on specified splits", field="amount")

        status = ParticipantStatus(participant.status)
        if participant.is_creator or status not in AMOUNT_EDITABLE_STATUSES:
            raise InvalidTransitionError(
                status.value,
                status.value,
                "Your amount can no longer be changed for this split",
            )
        if participant.is_settling:
            raise InvalidTransitionError(
                status.value,
                status.value,
                "Your payment for this split is being processed",
            )

        self._apply_amount(event, participant, value)
        await self.db.commit()
        return participant

    # ==================== Re-invite / delete ====================

    @log_async_operation("reinvite_participant")
    async def reinvite(
        self,
        creator_id: str,
        event_id: str,
        user_id: str,
        creator_name: str | None = None,
    ) -> SplitParticipant:
        """
        Declined -> pending with a fresh invite, or a reminder ping for a
        still-pending participant. Gated by the re-invite cooldown.
        """
        event = await self.get_event(event_id, for_update=True)
        self.require_participant(event, creator_id)
        if event.creator_id != creator_id:
            raise ForbiddenError("Only the split creator can re-invite participants")

        participant = self.find_participant(event, user_id)
        if participant is None:
            raise NotFoundException("Participant", user_id)

        status = ParticipantStatus(participant.status)
        if participant.is_creator or status not in (ParticipantStatus.DECLINED, ParticipantStatus.PENDING):
            raise InvalidTransitionError(status.value, ParticipantStatus.PENDING.value)

        now = utcnow()
        abuse_policy.evaluate_reinvite_cooldown(participant.last_invited_at, now).raise_if_denied()

        if status == ParticipantStatus.DECLINED:
            ParticipantStateMachine.transition(participant, ParticipantStatus.PENDING)
        else:
            participant.last_invited_at = now

        await self._send_invite(
            event,
            user_id,
            Decimal(participant.amount),
            creator_name,
            again=status == ParticipantStatus.PENDING,
        )
        await self.db.commit()
        return participant

    @log_async_operation("delete_split")
    async def delete_split(self, creator_id: str, event_id: str, creator_name: str | None = None) -> None:
        """
        Cancel a split outright. Refused once any non-creator has paid.

        Raises:
            ForbiddenError: caller is not the creator
            InvalidTransitionError: money has already moved or is moving
        """
        event = await self.get_event(event_id, for_update=True)
        self.require_participant(event, creator_id)
        if event.creator_id != creator_id:
            raise ForbiddenError("Only the split creator can delete this split")

        others = [p for p in event.participants if not p.is_creator]
        if any(ParticipantStatus(p.status) == ParticipantStatus.PAID for p in others):
            raise InvalidTransitionError(
                ParticipantStatus.PAID.value,
                "cancelled",
                "This split cannot be deleted because someone has already paid",
            )
        if any(p.is_settling for p in others):
            raise InvalidTransitionError(
                ParticipantStatus.ACCEPTED.value,
                "cancelled",
                "This split cannot be deleted while a payment for it is being processed",
            )

        name = event.name
        await self.db.execute(delete(Notification).where(Notification.split_event_id == event.id))
        await self.db.delete(event)
        await self.db.flush()

        for participant in others:
            await self.notifications.notify(
                user_id=participant.user_id,
                type=NotificationType.SPLIT_CANCELLED,
                title="Split Cancelled",
                message=f"{creator_name or 'Someone'} cancelled the split for {name}",
                metadata={"split_event_id": event_id, "split_name": name},
            )
        await self.db.commit()

        logger.info(
            "Split deleted",
            extra_data={"split_event_id": event_id, "creator_id": creator_id},
        )

    # ==================== Completion ====================

    async def check_completion(self, event: SplitEvent) -> Optional[Notification]:
        """
        Send split_completed to the creator once every non-creator has paid.

        The caller holds the event row lock; the existence check plus the
        unique dedup key keep it to one notification per event.
        """
        others = [p for p in event.participants if not p.is_creator]
        if not others or any(ParticipantStatus(p.status) != ParticipantStatus.PAID for p in others):
            return None

        if await self.notifications.exists_for_event(event.id, NotificationType.SPLIT_COMPLETED):
            return None

        collected = sum((Decimal(p.amount) for p in others), ZERO)
        notification = await self.notifications.notify(
            user_id=event.creator_id,
            type=NotificationType.SPLIT_COMPLETED,
            title="Split Complete!",
            message=f"Everyone has paid for {event.name}. You collected ${collected}!",
            split_event_id=event.id,
            metadata={"collected": str(collected)},
            dedup_key=completion_dedup_key(event.id),
        )
        if notification is not None:
            logger.info("Split completed", extra_data={"split_event_id": event.id})
        return notification

    # ==================== Reads ====================

    async def list_splits_for_user(self, user_id: str) -> list[SplitEvent]:
        member_of = select(SplitParticipant.split_event_id).where(SplitParticipant.user_id == user_id)
        result = await self.db.execute(
            select(SplitEvent)
            .where(SplitEvent.id.in_(member_of))
            .options(selectinload(SplitEvent.participants))
            .order_by(SplitEvent.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_split(self, event_id: str, user_id: str) -> SplitEvent:
        """Event visible only to its participants"""
        event = await self.get_event(event_id)
        self.require_participant(event, user_id)
        return event

    async def list_in_flight_settlements(self, started_before: datetime, limit: int = 5) -> list[SplitParticipant]:
        """Shares whose external payment was started before ``started_before`` and never resolved"""
        result = await self.db.execute(
            select(SplitParticipant)
            .where(
                SplitParticipant.settling_rail.isnot(None),
                SplitParticipant.settling_since < started_before,
            )
            .order_by(SplitParticipant.settling_since)
            .limit(limit)
        )
        return list(result.scalars().all())
