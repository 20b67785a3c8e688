"""
Kudos Integrity - Organization Quota Management

Per-organization consumption limits over UTC-aligned periods:
- Atomic increment-with-ceiling in the record store
- Lazy reset when a period has elapsed, plus sweep helpers for a scheduler
- Usage status and alerts (OK / WARNING / EXCEEDED)
- Explicit dependency failure policy (proceed or fail)

Usage:
    from quota import QuotaManager, QuotaConfig

    quotas = QuotaManager(store, QuotaConfig.from_env())
    result = quotas.check_quota("org_1", "verifications_per_day")

Environment Variables:
    QUOTA_ON_FAILURE=proceed|fail
    QUOTA_WARNING_THRESHOLD=0.8
    QUOTA_<RESOURCE>=<limit>   e.g. QUOTA_VERIFICATIONS_PER_DAY=1000
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, assert_never

from errors import DependencyFailurePolicy, Unavailable, ValidationError
from models import parse_iso, to_iso, utc_now
from storage.base import RecordStore, StorageError

logger = logging.getLogger(__name__)

QUOTA_COUNTERS = "quota_counters"


class QuotaPeriod(Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"

    def next_reset(self, now: datetime) -> datetime:
        """Start of the next UTC-aligned period after ``now``."""
        match self:
            case QuotaPeriod.HOURLY:
                return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
            case QuotaPeriod.DAILY:
                return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
            case QuotaPeriod.MONTHLY:
                start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
                if start.month == 12:
                    return start.replace(year=start.year + 1, month=1)
                return start.replace(month=start.month + 1)
            case _:
                assert_never(self)


class QuotaState(Enum):
    OK = "OK"
    WARNING = "WARNING"
    EXCEEDED = "EXCEEDED"


@dataclass(frozen=True)
class QuotaRule:
    limit: int
    period: QuotaPeriod


DEFAULT_QUOTAS: dict[str, QuotaRule] = {
    "recognitions_per_day": QuotaRule(1000, QuotaPeriod.DAILY),
    "recognitions_per_month": QuotaRule(25000, QuotaPeriod.MONTHLY),
    "verifications_per_day": QuotaRule(500, QuotaPeriod.DAILY),
    "api_calls_per_hour": QuotaRule(10000, QuotaPeriod.HOURLY),
    "exports_per_day": QuotaRule(50, QuotaPeriod.DAILY),
    "shareable_links_per_day": QuotaRule(200, QuotaPeriod.DAILY),
}


@dataclass
class QuotaConfig:
    """Configuration for quota enforcement."""

    quotas: dict[str, QuotaRule] = field(default_factory=lambda: dict(DEFAULT_QUOTAS))
    warning_threshold: float = 0.8
    on_failure: DependencyFailurePolicy = DependencyFailurePolicy.PROCEED

    @classmethod
    def from_env(cls) -> "QuotaConfig":
        quotas = dict(DEFAULT_QUOTAS)
        for resource, rule in DEFAULT_QUOTAS.items():
            raw = os.getenv(f"QUOTA_{resource.upper()}")
            if raw:
                try:
                    quotas[resource] = QuotaRule(int(raw), rule.period)
                except ValueError:
                    logger.warning(f"Ignoring malformed quota override for {resource}: {raw!r}")

        return cls(
            quotas=quotas,
            warning_threshold=float(os.getenv("QUOTA_WARNING_THRESHOLD", "0.8")),
            on_failure=DependencyFailurePolicy.parse(
                os.getenv("QUOTA_ON_FAILURE"), DependencyFailurePolicy.PROCEED
            ),
        )


@dataclass
class QuotaResult:
    """Result of a quota check. ``degraded`` marks a pass granted because the store failed."""

    allowed: bool
    remaining: int
    limit: int
    used: int
    reset_at: str | None = None
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "used": self.used,
            "reset_at": self.reset_at,
            "degraded": self.degraded,
        }


class QuotaManager:
    """
    Enforces and reports per-organization quotas.

    Counters live in the record store under ``quota_counters`` with id
    ``{organization_id}:{resource}``.
    """

    def __init__(
        self,
        store: RecordStore,
        config: QuotaConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or QuotaConfig.from_env()
        self.clock = clock

    def rule_for(self, resource: str) -> QuotaRule:
        rule = self.config.quotas.get(resource)
        if rule is None:
            raise ValidationError(
                f"Unknown quota resource: {resource}",
                details={"resource": resource, "known": sorted(self.config.quotas)},
            )
        return rule

    @staticmethod
    def _counter_id(organization_id: str, resource: str) -> str:
        return f"{organization_id}:{resource}"

    def check_quota(self, organization_id: str | None, resource: str) -> QuotaResult:
        """
        Consume one unit of ``resource`` for the organization.

        Actors without an organization are not subject to quotas.

        Raises:
            ValidationError: If the resource is not configured
            Unavailable: If the store fails and the policy is FAIL
        """
        rule = self.rule_for(resource)
        if not organization_id:
            return QuotaResult(allowed=True, remaining=rule.limit, limit=rule.limit, used=0)

        now = self.clock()
        try:
            counter = self.store.consume_counter(
                QUOTA_COUNTERS,
                self._counter_id(organization_id, resource),
                rule.limit,
                rule.period.next_reset(now),
                now,
            )
        except StorageError as e:
            return self._on_failure(organization_id, resource, rule, e)

        if not counter.allowed:
            logger.info(f"Quota {resource} exhausted for organization {organization_id}")

        return QuotaResult(
            allowed=counter.allowed,
            remaining=counter.remaining,
            limit=rule.limit,
            used=counter.used,
            reset_at=to_iso(counter.reset_at),
        )

    def _on_failure(
        self, organization_id: str, resource: str, rule: QuotaRule, error: StorageError
    ) -> QuotaResult:
        match self.config.on_failure:
            case DependencyFailurePolicy.PROCEED:
                logger.warning(
                    f"Quota check {resource} for {organization_id} failed, proceeding: {error}"
                )
                return QuotaResult(
                    allowed=True, remaining=rule.limit, limit=rule.limit, used=0, degraded=True
                )
            case DependencyFailurePolicy.FAIL:
                raise Unavailable(
                    "Quota store unavailable", details={"resource": resource}, cause=error
                )
            case _:
                assert_never(self.config.on_failure)

    # =========================================================================
    # Reporting
    # =========================================================================

    def peek_quota(self, organization_id: str | None, resource: str) -> QuotaResult:
        """
        Like check_quota() but consumes nothing.

        A store failure reports the resource as available; the consuming
        check_quota() call that follows applies the failure policy.
        """
        rule = self.rule_for(resource)
        if not organization_id:
            return QuotaResult(allowed=True, remaining=rule.limit, limit=rule.limit, used=0)
        try:
            status = self.get_status(organization_id, resource)
        except StorageError as e:
            logger.warning(f"Quota peek for {resource} failed: {e}")
            return QuotaResult(allowed=True, remaining=rule.limit, limit=rule.limit, used=0)
        return QuotaResult(
            allowed=status["used"] < rule.limit,
            remaining=status["remaining"],
            limit=rule.limit,
            used=status["used"],
            reset_at=status["reset_at"],
        )

    def get_status(self, organization_id: str, resource: str) -> dict[str, Any]:
        """Current usage of one resource, without consuming anything."""
        rule = self.rule_for(resource)
        now = self.clock()
        counter = self.store.get(QUOTA_COUNTERS, self._counter_id(organization_id, resource))

        used = 0
        reset_at = rule.period.next_reset(now)
        if counter and parse_iso(counter["reset_at"]) > now:
            used = int(counter.get("used", 0))
            reset_at = parse_iso(counter["reset_at"])

        percentage = round(used / rule.limit * 100, 2) if rule.limit else 100.0
        if used >= rule.limit:
            state = QuotaState.EXCEEDED
        elif rule.limit and used / rule.limit >= self.config.warning_threshold:
            state = QuotaState.WARNING
        else:
            state = QuotaState.OK

        return {
            "organization_id": organization_id,
            "resource": resource,
            "used": used,
            "limit": rule.limit,
            "remaining": max(0, rule.limit - used),
            "percentage": percentage,
            "state": state.value,
            "period": rule.period.value,
            "reset_at": to_iso(reset_at),
        }

    def get_all_statuses(self, organization_id: str) -> list[dict[str, Any]]:
        return [self.get_status(organization_id, resource) for resource in self.config.quotas]

    def get_alerts(self, organization_id: str) -> list[dict[str, Any]]:
        """Resources at or above the warning threshold."""
        return [s for s in self.get_all_statuses(organization_id) if s["state"] != QuotaState.OK.value]

    # =========================================================================
    # Resets (driven by an external scheduler)
    # =========================================================================

    def reset_quota(self, organization_id: str, resource: str) -> bool:
        self.rule_for(resource)
        deleted = self.store.delete(QUOTA_COUNTERS, self._counter_id(organization_id, resource))
        if deleted:
            logger.info(f"Reset quota {resource} for organization {organization_id}")
        return deleted

    def batch_reset(self, period: QuotaPeriod) -> int:
        """Reset every counter of every resource with the given period. Returns the count reset."""
        resources = {r for r, rule in self.config.quotas.items() if rule.period == period}
        reset = 0
        for counter in self.store.find(QUOTA_COUNTERS):
            counter_id = counter.get("id", "")
            _, _, resource = counter_id.rpartition(":")
            if resource in resources and self.store.delete(QUOTA_COUNTERS, counter_id):
                reset += 1
        logger.info(f"Batch reset {reset} {period.value} quota counter(s)")
        return reset
