"""Daily metered usage reconciliation.

Every run recomputes every day from the company's registration date through
today (tenant-local), so late-arriving API-call logs and status reports are
picked up retroactively. Counts are snapshots, never deltas.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone

import structlog

from everse_batch.core.clock import TenantClock
from everse_batch.core.errors import DuplicateRecordError
from everse_batch.core.interfaces import IBatchStore, StoreFactory
from everse_batch.core.models import Company, MeteredUsage

logger = structlog.get_logger(__name__)


@dataclass
class MeteredUsageRunSummary:
    created: int = 0
    updated: int = 0
    failed_days: int = 0
    failed_tenants: int = 0


class MeteredUsageService:
    """Maintain one MeteredUsage row per company day."""

    def __init__(self, store_factory: StoreFactory) -> None:
        """Initialize MeteredUsageService with required dependencies."""
        self._store_factory = store_factory

    async def reconcile_all(self, now: datetime | None = None) -> MeteredUsageRunSummary:
        """Reconcile metered usage for every company, one unit of work per company."""
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            companies = await store.companies.list_all()

        summary = MeteredUsageRunSummary()
        for company in companies:
            try:
                async with self._store_factory() as store:
                    result = await self.reconcile_metered_usage(store, company, now)
            except Exception:
                summary.failed_tenants += 1
                logger.exception("metered_usage_company_failed", company_id=str(company.id))
                continue
            summary.created += result.created
            summary.updated += result.updated
            summary.failed_days += result.failed_days

        logger.info("metered_usage_run_completed", companies=len(companies), **asdict(summary))
        return summary

    async def reconcile_metered_usage(
        self,
        store: IBatchStore,
        company: Company,
        now: datetime | None = None,
    ) -> MeteredUsageRunSummary:
        """Upsert the usage row of every day from registration through today.

        Args:
            store: Unit of work to read from and write to.
            company: The company to reconcile.
            now: Reference instant (UTC). Defaults to the current time.

        Returns:
            Created, updated, and failed day counts for the company.
        """
        now = now or datetime.now(timezone.utc)
        clock = TenantClock.for_company(company)
        tally = MeteredUsageRunSummary()

        day = clock.today(company.created_at)
        today = clock.today(now)
        while day <= today:
            try:
                async with store.savepoint():
                    created = await self._upsert_day(store, company, clock, day)
            except Exception:
                tally.failed_days += 1
                logger.exception(
                    "metered_usage_day_failed",
                    company_id=str(company.id),
                    usage_date=day.isoformat(),
                )
            else:
                if created:
                    tally.created += 1
                else:
                    tally.updated += 1
            day += timedelta(days=1)

        logger.debug(
            "metered_usage_company_completed",
            company_id=str(company.id),
            created=tally.created,
            updated=tally.updated,
        )
        return tally

    async def _upsert_day(self, store: IBatchStore, company: Company, clock: TenantClock, day: date) -> bool:
        """Returns True when a new row was created."""
        start, end = clock.day_bounds(day)
        api_call_count = await store.api_calls.count_chargeable_between(company.id, start, end)
        installation_count = await store.status_history.count_distinct_devices_between(company.id, start, end)

        usage = await store.metered_usages.get_by_company_date(company.id, day)
        if usage is None:
            try:
                async with store.savepoint():
                    await store.metered_usages.create(
                        MeteredUsage(
                            company_id=company.id,
                            usage_date=day,
                            api_call_count=api_call_count,
                            iot_installation_count=installation_count,
                        )
                    )
                return True
            except DuplicateRecordError:
                # A concurrent run created the row first; fall through to overwrite it.
                usage = await store.metered_usages.get_by_company_date(company.id, day)
                if usage is None:
                    raise

        usage.api_call_count = api_call_count
        usage.iot_installation_count = installation_count
        await store.metered_usages.update(usage)
        return False
