"""Retention sweep for aged operational records.

Tenant-scoped records are pruned per time zone, with the horizon computed
from "now" in that zone:
- usage readings and forecasts compare their tenant-local timestamps
- device status history and alarms compare UTC instants

Blacklisted tokens and two-factor codes are not tenant-scoped and are
pruned once per sweep.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog

from everse_batch.core.clock import TenantClock, add_months
from everse_batch.core.interfaces import IBatchStore, StoreFactory
from everse_batch.settings import Settings

logger = structlog.get_logger(__name__)


@dataclass
class RetentionRunSummary:
    deleted: dict[str, int] = field(default_factory=dict)
    failed_zones: int = 0
    auth_artifacts_failed: bool = False

    def record(self, record_type: str, count: int) -> None:
        self.deleted[record_type] = self.deleted.get(record_type, 0) + count


class RetentionService:
    """Delete readings, forecasts, status history, alarms, and auth artifacts past their horizon."""

    def __init__(self, store_factory: StoreFactory, settings: Settings) -> None:
        """Initialize RetentionService with required dependencies."""
        self._store_factory = store_factory
        self._settings = settings

    async def purge_expired(self, now: datetime | None = None) -> RetentionRunSummary:
        """Run one retention sweep.

        Args:
            now: Reference instant (UTC). Defaults to the current time.

        Returns:
            Deleted row counts per record type.
        """
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            companies = await store.companies.list_all()

        companies_by_zone: dict[str, list[uuid.UUID]] = defaultdict(list)
        for company in companies:
            companies_by_zone[company.time_zone].append(company.id)

        summary = RetentionRunSummary()
        for zone, company_ids in sorted(companies_by_zone.items()):
            try:
                async with self._store_factory() as store:
                    counts = await self.purge_zone(store, zone, company_ids, now)
            except Exception:
                summary.failed_zones += 1
                logger.exception("retention_zone_failed", time_zone=zone, companies=len(company_ids))
                continue
            for record_type, count in counts.items():
                summary.record(record_type, count)

        try:
            async with self._store_factory() as store:
                for record_type, count in (await self.purge_auth_artifacts(store, now)).items():
                    summary.record(record_type, count)
        except Exception:
            summary.auth_artifacts_failed = True
            logger.exception("retention_auth_artifacts_failed")

        logger.info(
            "retention_run_completed",
            deleted=summary.deleted,
            failed_zones=summary.failed_zones,
            auth_artifacts_failed=summary.auth_artifacts_failed,
        )
        return summary

    async def purge_zone(
        self,
        store: IBatchStore,
        zone: str,
        company_ids: list[uuid.UUID],
        now: datetime,
    ) -> dict[str, int]:
        """Delete the tenant-scoped records of companies sharing one time zone."""
        clock = TenantClock(zone)
        local_cutoff = add_months(clock.local_now(now), -12 * self._settings.reading_retention_years)
        instant_cutoff = clock.to_utc(local_cutoff)

        counts = {
            "usage_reading": await store.readings.delete_older_than(company_ids, local_cutoff),
            "forecast": await store.forecasts.delete_older_than(company_ids, local_cutoff),
            "device_status_history": await store.status_history.delete_created_before(
                company_ids, instant_cutoff
            ),
            "alarm": await store.alarms.delete_created_before(company_ids, instant_cutoff),
        }
        for record_type in ("usage_reading", "forecast"):
            _log_deletion(record_type, counts[record_type], local_cutoff, time_zone=zone)
        for record_type in ("device_status_history", "alarm"):
            _log_deletion(record_type, counts[record_type], instant_cutoff, time_zone=zone)
        return counts

    async def purge_auth_artifacts(self, store: IBatchStore, now: datetime) -> dict[str, int]:
        token_cutoff = add_months(now, -self._settings.token_retention_months)
        code_cutoff = now - timedelta(days=self._settings.two_factor_retention_days)
        counts = {
            "blacklisted_token": await store.auth_artifacts.delete_blacklisted_tokens_before(token_cutoff),
            "two_factor_auth_code": await store.auth_artifacts.delete_two_factor_codes_before(code_cutoff),
        }
        _log_deletion("blacklisted_token", counts["blacklisted_token"], token_cutoff)
        _log_deletion("two_factor_auth_code", counts["two_factor_auth_code"], code_cutoff)
        return counts


def _log_deletion(record_type: str, count: int, cutoff: datetime, **context: object) -> None:
    if count > 0:
        logger.info("records_deleted", record_type=record_type, count=count, cutoff=cutoff.isoformat(), **context)
