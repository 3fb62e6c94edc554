from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from .ledger import UsageLedger, check_amount
from .models import (
    JobKind,
    QuotaCheck,
    Resource,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageRecord,
    percent_of,
)

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class TierLimits:
    items_processed: int
    api_calls: int
    export_count: int
    # Informational only; extraction does not truncate findings to this.
    findings_per_item: int
    team_members: int
    history_retention_days: int
    export_formats: Tuple[str, ...] = field(default_factory=tuple)

    def limit_for(self, resource: Resource) -> int:
        return getattr(self, Resource(resource).value)


TIER_LIMITS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(
        items_processed=50,
        api_calls=500,
        export_count=50,
        findings_per_item=10,
        team_members=1,
        history_retention_days=30,
        export_formats=("csv",),
    ),
    SubscriptionTier.PRO: TierLimits(
        items_processed=500,
        api_calls=5000,
        export_count=500,
        findings_per_item=50,
        team_members=1,
        history_retention_days=365,
        export_formats=("csv", "json", "pdf"),
    ),
    SubscriptionTier.TEAM: TierLimits(
        items_processed=2000,
        api_calls=20000,
        export_count=2000,
        findings_per_item=100,
        team_members=10,
        history_retention_days=730,
        export_formats=("csv", "json", "pdf", "markdown"),
    ),
    SubscriptionTier.ENTERPRISE: TierLimits(
        items_processed=UNLIMITED,
        api_calls=UNLIMITED,
        export_count=UNLIMITED,
        findings_per_item=UNLIMITED,
        team_members=UNLIMITED,
        history_retention_days=UNLIMITED,
        export_formats=("csv", "json", "pdf", "markdown", "api"),
    ),
}

# Every job kind is billed per document it analyzes.
KIND_RESOURCES: Dict[JobKind, Resource] = {kind: Resource.ITEMS_PROCESSED for kind in JobKind}


def resource_for_kind(kind: JobKind) -> Resource:
    return KIND_RESOURCES[JobKind(kind)]


def effective_tier(subscription: Subscription) -> SubscriptionTier:
    if subscription.status == SubscriptionStatus.CANCELED:
        return SubscriptionTier.FREE
    return subscription.tier


def usage_percent(current: int, limit: int) -> int:
    """Share of ``limit`` used, clipped to 0..100. Unlimited always reads 0."""
    if limit == UNLIMITED:
        return 0
    if limit <= 0:
        return 100
    return max(0, min(100, percent_of(current, limit)))


def format_limit(limit: int) -> str:
    return "Unlimited" if limit == UNLIMITED else str(limit)


@dataclass
class UsageAnalytics:
    owner_id: str
    tier: SubscriptionTier
    subscription_status: SubscriptionStatus
    limits: TierLimits
    record: UsageRecord
    percentages: Dict[Resource, int]
    reset_at: datetime

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "tier": self.tier.value,
            "subscription_status": self.subscription_status.value,
            "period_start": self.record.period_start.isoformat(),
            "period_end": self.record.period_end.isoformat(),
            "reset_at": self.reset_at.isoformat(),
            "usage": {
                resource.value: {
                    "current": self.record.counter(resource),
                    "limit": format_limit(self.limits.limit_for(resource)),
                    "percent": self.percentages[resource],
                }
                for resource in Resource
            },
        }


class QuotaGate:
    """
    Admission control against the owner's tier limits for the current
    billing period.

    ``admit`` followed by ``record`` is the split check-then-act pair;
    two callers can both pass ``admit`` before either records. ``consume``
    performs the check and the increment as one conditional update in the
    store and is what job creation uses.
    """

    def __init__(self, ledger: UsageLedger, limits: Optional[Mapping[SubscriptionTier, TierLimits]] = None):
        self.ledger = ledger
        self.limits = dict(limits or TIER_LIMITS)

    def limits_for(self, owner_id: str) -> TierLimits:
        return self.limits[effective_tier(self.ledger.resolve_subscription(owner_id))]

    def admit(self, owner_id: str, resource: Resource, amount: int = 1) -> QuotaCheck:
        resource = Resource(resource)
        check_amount(amount)
        subscription = self.ledger.resolve_subscription(owner_id)
        tier = effective_tier(subscription)
        limit = self.limits[tier].limit_for(resource)
        record = self.ledger.current_record(owner_id, subscription)
        check = self._decide(tier, resource, limit, record.counter(resource), amount, subscription.current_period_end)
        if not check.allowed:
            logger.warning(
                "Quota denied for %s: %s %s+%s > %s",
                owner_id,
                resource.value,
                check.current,
                amount,
                limit,
            )
        return check

    def record(self, owner_id: str, resource: Resource, amount: int = 1) -> UsageRecord:
        return self.ledger.record(owner_id, Resource(resource), amount)

    def consume(self, owner_id: str, resource: Resource, amount: int = 1) -> QuotaCheck:
        resource = Resource(resource)
        check_amount(amount)
        subscription = self.ledger.resolve_subscription(owner_id)
        tier = effective_tier(subscription)
        limit = self.limits[tier].limit_for(resource)
        consumed, record = self.ledger.try_consume(owner_id, resource, amount, limit, subscription)
        current = record.counter(resource) - amount if consumed else record.counter(resource)
        check = self._decide(tier, resource, limit, current, amount, subscription.current_period_end)
        if not consumed:
            check.allowed = False
            check.upgrade_required = tier != SubscriptionTier.ENTERPRISE
            logger.warning("Quota denied for %s: %s %s+%s > %s", owner_id, resource.value, current, amount, limit)
        return check

    def release(self, owner_id: str, resource: Resource, amount: int) -> UsageRecord:
        return self.ledger.release(owner_id, Resource(resource), amount)

    def roll_period(self, owner_id: str) -> Optional[UsageRecord]:
        return self.ledger.roll_period(owner_id)

    def history(self, owner_id: str) -> List[UsageRecord]:
        return self.ledger.history(owner_id)

    def analytics(self, owner_id: str) -> UsageAnalytics:
        subscription = self.ledger.resolve_subscription(owner_id)
        tier = effective_tier(subscription)
        limits = self.limits[tier]
        record = self.ledger.current_record(owner_id, subscription)
        return UsageAnalytics(
            owner_id=owner_id,
            tier=tier,
            subscription_status=subscription.status,
            limits=limits,
            record=record,
            percentages={r: usage_percent(record.counter(r), limits.limit_for(r)) for r in Resource},
            reset_at=subscription.current_period_end,
        )

    def _decide(
        self,
        tier: SubscriptionTier,
        resource: Resource,
        limit: int,
        current: int,
        amount: int,
        reset_at: datetime,
    ) -> QuotaCheck:
        projected = current + amount
        allowed = limit == UNLIMITED or projected <= limit
        if limit == UNLIMITED:
            remaining = UNLIMITED
        elif allowed:
            remaining = max(0, limit - projected)
        else:
            remaining = max(0, limit - current)
        return QuotaCheck(
            allowed=allowed,
            remaining=remaining,
            limit=limit,
            reset_at=reset_at,
            upgrade_required=not allowed and tier != SubscriptionTier.ENTERPRISE,
            resource=resource,
            current=current,
        )
