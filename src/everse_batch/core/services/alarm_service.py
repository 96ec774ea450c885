"""Hourly usage and bill alarms.

AnomalyAlarmService looks at the previous full UTC hour for every company
and raises alarms when:
- usage falls below the active threshold's lowest bound x healthy devices
- usage exceeds the active threshold's highest bound x healthy devices
- during peak or mid-peak hours, the bill for actual usage exceeds the bill
  for the forecast usage

Alarms are append-only; the same condition in consecutive hours raises one
alarm per hour.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog

from everse_batch.core.clock import HourWindow, TenantClock
from everse_batch.core.errors import RateTableNotFoundError
from everse_batch.core.interfaces import IBatchStore, StoreFactory
from everse_batch.core.messages import alarm_message
from everse_batch.core.models import (
    Alarm,
    AlarmPriority,
    AlarmType,
    AnomalyThreshold,
    Company,
    DeviceStatus,
    EnergyRate,
    RatePeriod,
)
from everse_batch.core.pricing import classify_hour, effective_rate, round4
from everse_batch.settings import Settings

logger = structlog.get_logger(__name__)

BILLED_PERIODS = frozenset({RatePeriod.PEAK, RatePeriod.MID_PEAK})


def scaled_bounds(threshold: AnomalyThreshold, healthy_devices: int) -> tuple[Decimal, Decimal]:
    """Scale per-device bounds to the company's healthy device count.

    Zero healthy devices gives (0, 0).
    """
    count = Decimal(healthy_devices)
    return Decimal(threshold.lowest_hourly_usage) * count, Decimal(threshold.highest_hourly_usage) * count


def forecast_bill_overage(actual_usage: Decimal, forecast_usage: Decimal, rate: Decimal) -> Decimal | None:
    """Percentage by which the actual bill exceeds the forecast bill.

    Both costs are rounded to 4 places before comparison. Returns None when
    the actual cost does not exceed the forecast cost, or when the forecast
    cost is zero and no percentage exists.
    """
    actual_cost = round4(Decimal(actual_usage) * rate)
    forecast_cost = round4(Decimal(forecast_usage) * rate)
    if actual_cost <= forecast_cost or forecast_cost == 0:
        return None
    return round4((actual_cost - forecast_cost) / forecast_cost * 100)


@dataclass
class AlarmRunSummary:
    """Alarm counts for one evaluation run."""

    evaluated_tenants: int = 0
    min_usage_alarms: int = 0
    max_usage_alarms: int = 0
    forecast_bill_alarms: int = 0
    failed_tenants: int = 0

    def count(self, alarm: Alarm) -> None:
        if alarm.alarm_type == AlarmType.MIN_USAGE:
            self.min_usage_alarms += 1
        elif alarm.alarm_type == AlarmType.MAX_USAGE:
            self.max_usage_alarms += 1
        else:
            self.forecast_bill_alarms += 1


class AnomalyAlarmService:
    """Evaluate the previous hour's usage for every company and emit alarms."""

    def __init__(self, store_factory: StoreFactory, settings: Settings) -> None:
        """Initialize AnomalyAlarmService with required dependencies."""
        self._store_factory = store_factory
        self._settings = settings

    async def evaluate_last_hour(self, now: datetime | None = None) -> AlarmRunSummary:
        """Evaluate every company for the last full UTC hour before now.

        Each company runs in its own unit of work; a failing company is logged
        and skipped.

        Args:
            now: Reference instant (UTC). Defaults to the current time.

        Returns:
            Alarm counts for the run.
        """
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            companies = await store.companies.list_all()

        summary = AlarmRunSummary()
        for company in companies:
            try:
                async with self._store_factory() as store:
                    alarms = await self.evaluate_company(store, company, now)
            except Exception:
                summary.failed_tenants += 1
                logger.exception("alarm_evaluation_failed", company_id=str(company.id))
                continue
            summary.evaluated_tenants += 1
            for alarm in alarms:
                summary.count(alarm)

        logger.info("alarm_run_completed", **asdict(summary))
        return summary

    async def evaluate_company(self, store: IBatchStore, company: Company, now: datetime) -> list[Alarm]:
        """Run the threshold and forecast-bill checks for one company.

        Returns:
            The alarms emitted, possibly empty.
        """
        window = TenantClock.for_company(company).previous_hour(now)
        usage = await store.readings.sum_for_company_between(company.id, window.local_start, window.local_end)

        alarms = await self._check_thresholds(store, company, usage, now)
        try:
            bill_alarm = await self._check_forecast_bill(store, company, window, usage, now)
        except RateTableNotFoundError as exc:
            logger.warning(
                "forecast_bill_check_skipped",
                company_id=str(company.id),
                reason=str(exc),
            )
        else:
            if bill_alarm is not None:
                alarms.append(bill_alarm)
        return alarms

    async def _check_thresholds(
        self, store: IBatchStore, company: Company, usage: Decimal, now: datetime
    ) -> list[Alarm]:
        threshold = await store.thresholds.get_active(company.id)
        if threshold is None:
            return []

        healthy = await store.devices.count_by_status(company.id, DeviceStatus.NORMAL.value)
        scaled_min, scaled_max = scaled_bounds(threshold, healthy)

        alarms: list[Alarm] = []
        if usage < scaled_min:
            alarms.append(await self._emit(store, company, AlarmType.MIN_USAGE, now))
        if usage > scaled_max:
            alarms.append(await self._emit(store, company, AlarmType.MAX_USAGE, now))
        return alarms

    async def _check_forecast_bill(
        self,
        store: IBatchStore,
        company: Company,
        window: HourWindow,
        usage: Decimal,
        now: datetime,
    ) -> Alarm | None:
        rate = await self._resolve_rate(store, company)
        local_hour = window.local_start.replace(minute=0)
        if classify_hour(rate, local_hour.hour) not in BILLED_PERIODS:
            return None

        forecast = await store.forecasts.get_by_company_time(company.id, local_hour)
        if forecast is None:
            return None

        rate_per_unit = effective_rate(company, rate, local_hour.hour)
        percentage = forecast_bill_overage(usage, forecast.forecast_usage, rate_per_unit)
        if percentage is None:
            return None
        return await self._emit(store, company, AlarmType.FORECAST_BILL_EXCEEDED, now, percentage)

    async def _resolve_rate(self, store: IBatchStore, company: Company) -> EnergyRate:
        rate = await store.energy_rates.get_by_country(company.country_id)
        if rate is None:
            raise RateTableNotFoundError(company.country_id)
        return rate

    async def _emit(
        self,
        store: IBatchStore,
        company: Company,
        alarm_type: AlarmType,
        now: datetime,
        percentage: Decimal | None = None,
    ) -> Alarm:
        alarm = Alarm(
            company_id=company.id,
            alarm_type=alarm_type.value,
            priority=AlarmPriority.HIGH.value,
            message=alarm_message(alarm_type, company.language_code, percentage),
            notify=True,
            is_read=False,
            created_at=now,
            expires_at=now + timedelta(days=self._settings.alarm_expiration_days),
        )
        await store.alarms.create(alarm)
        logger.info(
            "alarm_emitted",
            company_id=str(company.id),
            alarm_type=alarm_type.value,
            percentage=str(percentage) if percentage is not None else None,
        )
        return alarm
