from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .errors import ValidationError
from .models import (
    Resource,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageRecord,
    utcnow,
)
from .repository import BatchRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_period(at: datetime) -> Tuple[datetime, datetime]:
    start = at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)


def next_period(period_end: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """
    First monthly period, contiguous with one ending at ``period_end``,
    that contains ``now``. Idle months in between get no record.
    """
    months = 1
    while add_months(period_end, months) <= now:
        months += 1
    return add_months(period_end, months - 1), add_months(period_end, months)


class UsageLedger:
    """
    Period-scoped usage counters per owner. Exactly one UsageRecord exists
    per (owner, period); the record for a new period is created lazily the
    first time the owner is seen after the previous one ended, and old
    records are kept untouched for reporting.
    """

    def __init__(self, repository: BatchRepository, clock: Clock = utcnow):
        self.repo = repository
        self.clock = clock

    def resolve_subscription(self, owner_id: str) -> Subscription:
        """
        Current subscription with its period brought up to date. Owners
        without one get an unsaved Free subscription on calendar months.
        """
        now = self.clock()
        subscription = self.repo.get_subscription(owner_id)
        if subscription is None:
            start, end = calendar_period(now)
            return Subscription(
                owner_id=owner_id,
                tier=SubscriptionTier.FREE,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=start,
                current_period_end=end,
                created_at=start,
                updated_at=start,
            )
        if subscription.current_period_end <= now:
            self.roll_period(owner_id)
            subscription = self.repo.get_subscription(owner_id)
        return subscription

    def current_record(self, owner_id: str, subscription: Optional[Subscription] = None) -> UsageRecord:
        subscription = subscription or self.resolve_subscription(owner_id)
        return self.repo.create_usage_record(
            UsageRecord(
                owner_id=owner_id,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            )
        )

    def roll_period(self, owner_id: str) -> Optional[UsageRecord]:
        """
        Move the owner onto the period containing now. Returns the fresh
        zeroed record, or None when the current period has not ended yet.
        """
        now = self.clock()
        subscription = self.repo.get_subscription(owner_id)
        if subscription is None:
            start, end = calendar_period(now)
            if self.repo.find_usage_record(owner_id, now):
                return None
            return self.repo.create_usage_record(UsageRecord(owner_id=owner_id, period_start=start, period_end=end))
        if subscription.current_period_end > now:
            return None

        start, end = next_period(subscription.current_period_end, now)
        logger.info(
            "Rolling usage period for %s: %s -> %s",
            owner_id,
            subscription.current_period_end.isoformat(),
            end.isoformat(),
        )
        if subscription.cancel_at_period_end and subscription.status != SubscriptionStatus.CANCELED:
            subscription.status = SubscriptionStatus.CANCELED
            logger.info("Subscription for %s canceled at period end", owner_id)
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.updated_at = now
        self.repo.save_subscription(subscription)
        return self.repo.create_usage_record(UsageRecord(owner_id=owner_id, period_start=start, period_end=end))

    def record(self, owner_id: str, resource: Resource, amount: int = 1) -> UsageRecord:
        """Unconditionally add ``amount`` to the current period's counter."""
        check_amount(amount)
        current = self.current_record(owner_id)
        updated = self.repo.increment_usage(current.id, Resource(resource), amount)
        return updated or current

    def release(self, owner_id: str, resource: Resource, amount: int) -> UsageRecord:
        """Give back units charged for work that never got stored."""
        check_amount(amount)
        current = self.current_record(owner_id)
        updated = self.repo.decrement_usage(current.id, Resource(resource), amount)
        return updated or current

    def try_consume(
        self,
        owner_id: str,
        resource: Resource,
        amount: int,
        limit: int,
        subscription: Optional[Subscription] = None,
    ) -> Tuple[bool, UsageRecord]:
        """
        Atomic conditional increment. Returns (True, updated record) when the
        counter stayed within ``limit``, otherwise (False, current record).
        """
        check_amount(amount)
        current = self.current_record(owner_id, subscription)
        updated = self.repo.increment_usage(current.id, Resource(resource), amount, limit=limit)
        if updated is None:
            return False, self.current_record(owner_id, subscription)
        return True, updated

    def history(self, owner_id: str) -> List[UsageRecord]:
        return self.repo.list_usage_records(owner_id)


def check_amount(amount: int) -> None:
    if amount < 0:
        raise ValidationError(f"Usage amount must be non-negative, got {amount}")
