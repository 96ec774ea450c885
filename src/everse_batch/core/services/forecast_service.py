"""Hourly usage forecasting.

UsageForecastService fills the forecast table for last, this, and next month
of every company. Each company hour gets exactly one forecast row.

Key invariants:
- At most one Forecast per (company, forecast_time). Existence is checked
  before the value is computed and again immediately before insert; a
  uniqueness violation on insert means another run won the race and is a no-op.
- An externally trained model's output wins over the historical fallback.
- The historical fallback divides by HISTORY_MONTHS even when some of those
  months have no readings. This reproduces long-standing production behaviour
  and underestimates new tenants; do not change it without a migration plan.
- One company hour failing never stops the remaining hours or companies.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal

import structlog

from everse_batch.core.clock import TenantClock, add_months
from everse_batch.core.errors import DuplicateRecordError
from everse_batch.core.interfaces import IBatchStore, StoreFactory
from everse_batch.core.models import Company, Device, Forecast
from everse_batch.core.pricing import round4
from everse_batch.jobs.fanout import bounded_gather
from everse_batch.settings import Settings

logger = structlog.get_logger(__name__)

HISTORY_MONTHS = 3


@dataclass
class ForecastRunSummary:
    """Hour counts for one forecast run."""

    created: int = 0
    skipped: int = 0
    failed_hours: int = 0
    failed_tenants: int = 0

    def add(self, other: "ForecastRunSummary") -> None:
        self.created += other.created
        self.skipped += other.skipped
        self.failed_hours += other.failed_hours
        self.failed_tenants += other.failed_tenants


class UsageForecastService:
    """Produce hourly usage forecasts per company.

    Companies are processed concurrently, bounded by
    settings.forecast_max_concurrency, each in its own unit of work.
    """

    def __init__(self, store_factory: StoreFactory, settings: Settings) -> None:
        """Initialize UsageForecastService with required dependencies."""
        self._store_factory = store_factory
        self._settings = settings

    async def ensure_forecast(
        self,
        store: IBatchStore,
        company: Company,
        hour: datetime,
        devices: list[Device] | None = None,
    ) -> Forecast | None:
        """Create the forecast for a company hour unless one already exists.

        Args:
            store: Unit of work to read from and write to.
            company: The company being forecast.
            hour: Forecast hour, tenant-local wall clock.
            devices: The company's devices, when the caller already loaded them.

        Returns:
            The newly created Forecast, or None when one already existed.
        """
        if await store.forecasts.exists(company.id, hour):
            return None

        value = await self._model_forecast(store, company, hour)
        if value is None:
            value = await self.historical_average(store, company, hour, devices=devices)

        if await store.forecasts.exists(company.id, hour):
            return None

        forecast = Forecast(company_id=company.id, forecast_usage=value, forecast_time=hour)
        try:
            async with store.savepoint():
                await store.forecasts.create(forecast)
        except DuplicateRecordError:
            logger.info(
                "forecast_insert_race_lost",
                company_id=str(company.id),
                forecast_time=hour.isoformat(),
            )
            return None

        logger.debug(
            "forecast_created",
            company_id=str(company.id),
            forecast_time=hour.isoformat(),
            forecast_usage=str(value),
        )
        return forecast

    async def historical_average(
        self,
        store: IBatchStore,
        company: Company,
        hour: datetime,
        devices: list[Device] | None = None,
    ) -> Decimal:
        """Average usage at the same hour over the previous HISTORY_MONTHS months.

        Missing months add nothing to the sum but still count in the divisor.
        """
        if devices is None:
            devices = await store.devices.list_by_company(company.id)

        total = Decimal(0)
        for device in devices:
            for months_back in range(1, HISTORY_MONTHS + 1):
                usage = await store.readings.sum_for_device_at(device.id, add_months(hour, -months_back))
                if usage is not None:
                    total += Decimal(usage)
        return round4(total / HISTORY_MONTHS)

    async def generate_monthly_forecasts(self, now: datetime | None = None) -> ForecastRunSummary:
        """Ensure forecasts for every hour of last, this, and next month for every company.

        Args:
            now: Reference instant (UTC). Defaults to the current time.

        Returns:
            Totals across all companies.
        """
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            companies = await store.companies.list_all()

        results = await bounded_gather(
            companies,
            lambda company: self._forecast_company(company, now),
            self._settings.forecast_max_concurrency,
        )

        summary = ForecastRunSummary()
        for company, result in zip(companies, results):
            if isinstance(result, BaseException):
                summary.failed_tenants += 1
                logger.error(
                    "forecast_company_failed",
                    company_id=str(company.id),
                    error=repr(result),
                    exc_info=result,
                )
                continue
            summary.add(result)

        logger.info("forecast_run_completed", companies=len(companies), **asdict(summary))
        return summary

    async def _forecast_company(self, company: Company, now: datetime) -> ForecastRunSummary:
        clock = TenantClock.for_company(company)
        tally = ForecastRunSummary()

        async with self._store_factory() as store:
            devices = await store.devices.list_by_company(company.id)
            for window in (clock.last_month(now), clock.this_month(now), clock.next_month(now)):
                existing = await store.forecasts.list_forecast_times(company.id, window.start, window.end)
                for hour in window.hours():
                    if hour in existing:
                        tally.skipped += 1
                        continue
                    try:
                        async with store.savepoint():
                            created = await self.ensure_forecast(store, company, hour, devices=devices)
                    except Exception:
                        tally.failed_hours += 1
                        logger.exception(
                            "forecast_hour_failed",
                            company_id=str(company.id),
                            forecast_time=hour.isoformat(),
                        )
                        continue
                    if created is None:
                        tally.skipped += 1
                    else:
                        tally.created += 1
                await store.commit()

        logger.info(
            "forecast_company_completed",
            company_id=str(company.id),
            time_zone=clock.time_zone,
            created=tally.created,
            skipped=tally.skipped,
            failed_hours=tally.failed_hours,
        )
        return tally

    async def _model_forecast(self, store: IBatchStore, company: Company, hour: datetime) -> Decimal | None:
        output = await store.forecast_models.get_by_company_time(company.id, hour)
        if output is None or output.forecast_usage is None:
            return None
        value = Decimal(output.forecast_usage)
        if value < 0:
            logger.warning(
                "model_forecast_negative_clamped",
                company_id=str(company.id),
                forecast_time=hour.isoformat(),
                forecast_usage=str(value),
            )
            value = Decimal(0)
        return round4(value)
