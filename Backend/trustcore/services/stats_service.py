"""Security statistics computed with grouped aggregates over the event log."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from trustcore.config import get_settings
from trustcore.errors import TrustCoreError, ValidationError
from trustcore.ports import UserDirectory
from trustcore.schemas.security import (
    DailyTrendEntry,
    SecurityEventType,
    SecurityStats,
    Severity,
    TopIPEntry,
    TopUserEntry,
)
from trustcore.stores.security_event_log import SecurityEventLog
from trustcore.stores.security_policy_store import SecurityPolicyStore
from trustcore.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = "Unknown"


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class SecurityStatsService:
    def __init__(
        self,
        events: SecurityEventLog,
        policies: SecurityPolicyStore,
        users: UserDirectory,
        clock: Clock = utc_now,
        top_n: Optional[int] = None,
    ):
        self.events = events
        self.policies = policies
        self.users = users
        self._clock = clock
        self._top_n = top_n or get_settings().stats_top_n

    async def get_security_stats(self, organization_id: UUID, days: int = 30) -> SecurityStats:
        if days < 1:
            raise ValidationError("Statistics window must be at least one day", details={"days": days})

        now = self._clock()
        since = now - timedelta(days=days)
        today = _start_of_day(now)
        # weeks start on Sunday
        week = today - timedelta(days=(today.weekday() + 1) % 7)
        month = today.replace(day=1)

        by_type = await self.events.count_by(organization_id, since, "event_type")
        by_severity = await self.events.count_by(organization_id, since, "severity")
        total = sum(by_type.values())

        daily = await self.events.daily_counts(organization_id, since)
        top_user_rows = await self.events.top_users(organization_id, since, self._top_n)
        top_ip_rows = await self.events.top_ips(organization_id, since, self._top_n)

        names = {}
        if top_user_rows:
            try:
                names = await self.users.get_user_names(user_id for user_id, _, _ in top_user_rows)
            except TrustCoreError:
                logger.exception("Could not resolve user names for security stats org=%s", organization_id)

        top_ips = []
        for ip, count, last in top_ip_rows:
            top_ips.append(
                TopIPEntry(
                    ip_address=ip,
                    event_count=count,
                    last_activity=last,
                    is_blocked=await self.policies.is_ip_blocked(organization_id, ip),
                )
            )

        return SecurityStats(
            total_events=total,
            events_today=await self.events.count_events(organization_id, since=today),
            events_this_week=await self.events.count_events(organization_id, since=week),
            events_this_month=await self.events.count_events(organization_id, since=month),
            failed_logins=by_type.get(SecurityEventType.LOGIN_FAILED.value, 0),
            successful_logins=by_type.get(SecurityEventType.LOGIN_SUCCESS.value, 0),
            locked_accounts=by_type.get(SecurityEventType.LOGIN_LOCKED.value, 0),
            suspicious_activities=by_type.get(SecurityEventType.SUSPICIOUS_ACTIVITY.value, 0),
            critical_events=by_severity.get(Severity.CRITICAL.value, 0),
            events_by_type=by_type,
            events_by_severity={s.value: by_severity.get(s.value, 0) for s in Severity},
            daily_trend=[
                DailyTrendEntry(date=d, events=n, failed_logins=f, suspicious_activities=s) for d, n, f, s in daily
            ],
            top_users=[
                TopUserEntry(
                    user_id=user_id,
                    user_name=names.get(user_id, UNKNOWN_USER_NAME),
                    event_count=count,
                    last_activity=last,
                )
                for user_id, count, last in top_user_rows
            ],
            top_ips=top_ips,
        )
