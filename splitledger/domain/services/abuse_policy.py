"""
Rate / Abuse Policy

Pure evaluation functions over time-stamped snapshots, plus thin async
helpers that load those snapshots. Nothing here mutates state; callers turn a
denied PolicyDecision into a RateLimitedError before touching any row.

Counters are derived from split_events and transactions with indexed
time-range queries, so there are no counter tables to keep in sync.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from math import ceil
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.core.config import settings
from splitledger.core.exceptions import RateLimitedError
from splitledger.core.validation import ZERO
from splitledger.db.models.split_event import SplitEvent
from splitledger.db.models.transaction import Transaction, TransactionType

ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(hours=24)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    retry_after_seconds: int = 0
    reason: Optional[str] = None
    message: Optional[str] = None

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise RateLimitedError(
                message=self.message or "Rate limit exceeded",
                retry_after_seconds=self.retry_after_seconds,
                reason=self.reason or "rate_limited",
            )


ALLOWED = PolicyDecision(allowed=True)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, ceil((moment - now).total_seconds()))


def _window_retry_after(
    timestamps: Sequence[datetime],
    now: datetime,
    window: timedelta,
    limit: int,
) -> Optional[int]:
    """
    None when fewer than ``limit`` timestamps fall inside the window,
    otherwise seconds until enough of them age out to allow one more.
    """
    inside = sorted(t for t in timestamps if t > now - window)
    if len(inside) < limit:
        return None
    # The (count - limit + 1)-th oldest must leave the window
    pivot = inside[len(inside) - limit]
    return _seconds_until(pivot + window, now)


def evaluate_split_throttle(
    created_at: Sequence[datetime],
    now: datetime,
    max_per_hour: int | None = None,
    max_per_day: int | None = None,
) -> PolicyDecision:
    """Creator may create at most N splits per trailing hour and M per trailing 24h"""
    max_per_hour = max_per_hour or settings.SPLIT_MAX_PER_HOUR
    max_per_day = max_per_day or settings.SPLIT_MAX_PER_DAY

    retry = _window_retry_after(created_at, now, ONE_HOUR, max_per_hour)
    if retry is not None:
        return PolicyDecision(
            allowed=False,
            retry_after_seconds=retry,
            reason="split_hourly_limit",
            message=(
                f"You can only create {max_per_hour} splits per hour. "
                "Please wait before creating another split."
            ),
        )

    retry = _window_retry_after(created_at, now, ONE_DAY, max_per_day)
    if retry is not None:
        return PolicyDecision(
            allowed=False,
            retry_after_seconds=retry,
            reason="split_daily_limit",
            message=f"You can only create {max_per_day} splits per day. Please try again tomorrow.",
        )

    return ALLOWED


def evaluate_withdrawal_cap(
    withdrawn_at: Sequence[datetime],
    now: datetime,
    max_per_day: int | None = None,
) -> PolicyDecision:
    max_per_day = max_per_day or settings.WITHDRAWAL_MAX_PER_DAY
    retry = _window_retry_after(withdrawn_at, now, ONE_DAY, max_per_day)
    if retry is None:
        return ALLOWED
    return PolicyDecision(
        allowed=False,
        retry_after_seconds=retry,
        reason="withdrawal_daily_limit",
        message=(
            f"You have reached the maximum of {max_per_day} withdrawals per day. "
            "Please try again tomorrow."
        ),
    )


def evaluate_deposit_cap(
    deposited_at: Sequence[datetime],
    now: datetime,
    max_per_day: int | None = None,
) -> PolicyDecision:
    max_per_day = max_per_day or settings.DEPOSIT_MAX_PER_DAY
    retry = _window_retry_after(deposited_at, now, ONE_DAY, max_per_day)
    if retry is None:
        return ALLOWED
    return PolicyDecision(
        allowed=False,
        retry_after_seconds=retry,
        reason="deposit_daily_limit",
        message=(
            f"You have reached the maximum of {max_per_day} deposits per day. "
            "Please try again tomorrow."
        ),
    )


def compute_withdrawable(
    balance: Decimal,
    deposits: Sequence[tuple[datetime, Decimal]],
    now: datetime,
    hold_hours: int | None = None,
) -> tuple[Decimal, Decimal]:
    """
    Returns (withdrawable, held).

    Deposits younger than the hold are held; received split payments never are.
    """
    hold = timedelta(hours=hold_hours or settings.DEPOSIT_HOLD_HOURS)
    held = sum((Decimal(amount) for created, amount in deposits if created > now - hold), ZERO)
    withdrawable = max(ZERO, Decimal(balance) - held)
    return withdrawable, held


def evaluate_deposit_hold(
    balance: Decimal,
    deposits: Sequence[tuple[datetime, Decimal]],
    amount: Decimal,
    now: datetime,
    hold_hours: int | None = None,
) -> PolicyDecision:
    """
    Reject a withdrawal that would pay out funds still on hold.

    Retry-after is the moment enough held deposits age out for
    ``balance - still_held >= amount``.
    """
    hold = timedelta(hours=hold_hours or settings.DEPOSIT_HOLD_HOURS)
    withdrawable, held = compute_withdrawable(balance, deposits, now, hold_hours)
    if amount <= withdrawable:
        return ALLOWED

    needed = Decimal(amount) - (Decimal(balance) - held)
    released = ZERO
    release_at = now
    for created, deposit_amount in sorted(d for d in deposits if d[0] > now - hold):
        released += Decimal(deposit_amount)
        release_at = created + hold
        if released >= needed:
            break

    return PolicyDecision(
        allowed=False,
        retry_after_seconds=_seconds_until(release_at, now),
        reason="deposit_hold",
        message=(
            f"To prevent fund cycling, deposited funds cannot be withdrawn within "
            f"{hold_hours or settings.DEPOSIT_HOLD_HOURS} hours. "
            f"You can withdraw up to ${withdrawable} now."
        ),
    )


def evaluate_reinvite_cooldown(
    last_invited_at: Optional[datetime],
    now: datetime,
    cooldown_hours: int | None = None,
) -> PolicyDecision:
    if last_invited_at is None:
        return ALLOWED
    cooldown = timedelta(hours=cooldown_hours or settings.REINVITE_COOLDOWN_HOURS)
    if now - last_invited_at >= cooldown:
        return ALLOWED
    return PolicyDecision(
        allowed=False,
        retry_after_seconds=_seconds_until(last_invited_at + cooldown, now),
        reason="reinvite_cooldown",
        message="This person was invited recently. Please wait before sending another invite.",
    )


# ==================== Snapshot queries ====================

async def load_split_creation_times(db: AsyncSession, creator_id: str, now: datetime) -> list[datetime]:
    result = await db.execute(
        select(SplitEvent.created_at).where(
            SplitEvent.creator_id == creator_id,
            SplitEvent.created_at > now - ONE_DAY,
        )
    )
    return list(result.scalars().all())


async def load_transaction_times(
    db: AsyncSession,
    user_id: str,
    tx_type: TransactionType,
    since: datetime,
) -> list[datetime]:
    result = await db.execute(
        select(Transaction.created_at).where(
            Transaction.user_id == user_id,
            Transaction.type == tx_type,
            Transaction.created_at > since,
        )
    )
    return list(result.scalars().all())


async def load_recent_deposits(
    db: AsyncSession,
    user_id: str,
    now: datetime,
    hold_hours: int | None = None,
) -> list[tuple[datetime, Decimal]]:
    hold = timedelta(hours=hold_hours or settings.DEPOSIT_HOLD_HOURS)
    result = await db.execute(
        select(Transaction.created_at, Transaction.amount).where(
            Transaction.user_id == user_id,
            Transaction.type == TransactionType.DEPOSIT,
            Transaction.created_at > now - hold,
        )
    )
    return [(created, Decimal(amount)) for created, amount in result.all()]


async def check_split_creation(db: AsyncSession, creator_id: str, now: datetime) -> None:
    """Raises RateLimitedError when the creator is over the throttle"""
    times = await load_split_creation_times(db, creator_id, now)
    evaluate_split_throttle(times, now).raise_if_denied()


async def check_withdrawal(
    db: AsyncSession,
    user_id: str,
    balance: Decimal,
    amount: Decimal,
    now: datetime,
) -> None:
    """Withdrawal cap, then deposit hold"""
    times = await load_transaction_times(db, user_id, TransactionType.WITHDRAWAL, now - ONE_DAY)
    evaluate_withdrawal_cap(times, now).raise_if_denied()

    deposits = await load_recent_deposits(db, user_id, now)
    evaluate_deposit_hold(balance, deposits, amount, now).raise_if_denied()


async def check_deposit(db: AsyncSession, user_id: str, now: datetime) -> None:
    times = await load_transaction_times(db, user_id, TransactionType.DEPOSIT, now - ONE_DAY)
    evaluate_deposit_cap(times, now).raise_if_denied()


async def get_withdrawable(db: AsyncSession, user_id: str, balance: Decimal, now: datetime) -> tuple[Decimal, Decimal]:
    deposits = await load_recent_deposits(db, user_id, now)
    return compute_withdrawable(balance, deposits, now)
