from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from .errors import InvalidTransitionError
from .ledger import Clock, UsageLedger, add_months
from .models import Subscription, SubscriptionStatus, SubscriptionTier, UsageRecord, utcnow
from .repository import BatchRepository

logger = logging.getLogger(__name__)

# Status changes driven by payment events; cancellation is handled separately
# because it only takes effect when the period rolls.
PAYMENT_SUCCESS = {
    SubscriptionStatus.TRIALING: SubscriptionStatus.ACTIVE,
    SubscriptionStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE: SubscriptionStatus.ACTIVE,
}
PAYMENT_FAILURE = {
    SubscriptionStatus.ACTIVE: SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
}


class SubscriptionService:
    """
    Subscription lifecycle: Trialing -> Active on payment, Active <-> PastDue
    on failed and retried payments, and Canceled once a requested
    cancellation reaches the end of the period. Free subscriptions are
    always Active.
    """

    def __init__(self, repository: BatchRepository, ledger: UsageLedger, clock: Clock = utcnow):
        self.repo = repository
        self.ledger = ledger
        self.clock = clock

    def get(self, owner_id: str) -> Optional[Subscription]:
        if self.repo.get_subscription(owner_id) is None:
            return None
        return self.ledger.resolve_subscription(owner_id)

    def create(self, owner_id: str, tier: SubscriptionTier = SubscriptionTier.FREE, trial_days: int = 14) -> Subscription:
        tier = SubscriptionTier(tier)
        now = self.clock()
        # A subscription started mid-period takes over the running usage period
        # so counters carry across and periods never overlap.
        running = self.repo.find_usage_record(owner_id, now)
        if running:
            start, end = running.period_start, running.period_end
        else:
            start, end = now, add_months(now, 1)
        paid = tier != SubscriptionTier.FREE
        subscription = Subscription(
            owner_id=owner_id,
            tier=tier,
            status=SubscriptionStatus.TRIALING if paid and trial_days > 0 else SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=end,
            trial_ends_at=now + timedelta(days=trial_days) if paid and trial_days > 0 else None,
            created_at=now,
            updated_at=now,
        )
        self.repo.save_subscription(subscription)
        self.repo.create_usage_record(UsageRecord(owner_id=owner_id, period_start=start, period_end=end))
        logger.info("Created %s subscription for %s (%s)", tier.value, owner_id, subscription.status.value)
        return subscription

    def record_payment_success(self, owner_id: str) -> Subscription:
        return self._apply_payment(owner_id, PAYMENT_SUCCESS, "payment success")

    def record_payment_failure(self, owner_id: str) -> Subscription:
        return self._apply_payment(owner_id, PAYMENT_FAILURE, "payment failure")

    def upgrade(self, owner_id: str, tier: SubscriptionTier) -> Subscription:
        tier = SubscriptionTier(tier)
        subscription = self.get(owner_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            return self.create(owner_id, tier, trial_days=0)
        subscription.tier = tier
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.cancel_at_period_end = False
        subscription.updated_at = self.clock()
        self.repo.save_subscription(subscription)
        logger.info("Subscription for %s moved to %s", owner_id, tier.value)
        return subscription

    def cancel(self, owner_id: str) -> Subscription:
        """Request cancellation; the subscription stays usable until its period ends."""
        subscription = self._require(owner_id)
        if subscription.tier == SubscriptionTier.FREE:
            raise InvalidTransitionError("Free subscriptions cannot be canceled")
        if subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidTransitionError(f"Subscription for {owner_id} is already canceled")
        subscription.cancel_at_period_end = True
        subscription.updated_at = self.clock()
        self.repo.save_subscription(subscription)
        logger.info("Subscription for %s will cancel at %s", owner_id, subscription.current_period_end.isoformat())
        return subscription

    def _apply_payment(self, owner_id: str, transitions: dict, event: str) -> Subscription:
        subscription = self._require(owner_id)
        if subscription.tier == SubscriptionTier.FREE:
            raise InvalidTransitionError("Free subscriptions have no payments")
        target = transitions.get(subscription.status)
        if target is None:
            raise InvalidTransitionError(f"Cannot apply {event} to a {subscription.status.value} subscription")
        if target != subscription.status:
            logger.info("Subscription for %s: %s -> %s", owner_id, subscription.status.value, target.value)
        subscription.status = target
        if target == SubscriptionStatus.ACTIVE:
            subscription.trial_ends_at = None
        subscription.updated_at = self.clock()
        self.repo.save_subscription(subscription)
        return subscription

    def _require(self, owner_id: str) -> Subscription:
        subscription = self.get(owner_id)
        if subscription is None:
            raise InvalidTransitionError(f"No subscription found for {owner_id}")
        return subscription
