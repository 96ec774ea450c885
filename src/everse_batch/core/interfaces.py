"""Abstract interfaces (Protocol classes) for the Everse batch core.

All services depend on these interfaces, not concrete implementations.
This enables dependency injection and test doubles without coupling the
engines to SQLAlchemy or to a particular storage backend.

Time arguments follow the column they filter: reading and forecast times are
naive tenant-local datetimes, every other instant is timezone-aware UTC.
"""

import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from everse_batch.core.models import (
    Alarm,
    AnomalyThreshold,
    Company,
    Device,
    EnergyRate,
    Forecast,
    ForecastModelOutput,
    Invoice,
    MeteredUsage,
    Subscription,
    UsageReading,
)


@runtime_checkable
class ICompanyRepository(Protocol):
    """Tenant directory."""

    async def list_all(self) -> list[Company]:
        """List every company with its country loaded."""
        ...

    async def get_by_id(self, company_id: uuid.UUID) -> Company | None:
        """Retrieve a company by primary key."""
        ...


@runtime_checkable
class IDeviceRepository(Protocol):
    """Device directory."""

    async def list_by_company(self, company_id: uuid.UUID) -> list[Device]:
        """List all devices of a company regardless of status."""
        ...

    async def count_by_status(self, company_id: uuid.UUID, status: str) -> int:
        """Count a company's devices currently in the given status."""
        ...


@runtime_checkable
class IUsageReadingRepository(Protocol):
    """Usage-reading store."""

    async def create(self, reading: UsageReading) -> UsageReading:
        """Append a reading."""
        ...

    async def sum_for_device_at(self, device_id: uuid.UUID, reference_time: datetime) -> Decimal | None:
        """Sum a device's readings stamped exactly at reference_time. None when there are none."""
        ...

    async def sum_for_company_between(self, company_id: uuid.UUID, start: datetime, end: datetime) -> Decimal:
        """Sum readings of all the company's devices with start <= reference_time < end."""
        ...

    async def delete_older_than(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        """Delete readings of the companies' devices with reference_time < cutoff. Returns the row count."""
        ...


@runtime_checkable
class IForecastModelRepository(Protocol):
    """Read-only store of externally trained forecasts."""

    async def get_by_company_time(
        self, company_id: uuid.UUID, forecast_time: datetime
    ) -> ForecastModelOutput | None:
        """Look up the model's forecast for a company hour, if any."""
        ...


@runtime_checkable
class IForecastRepository(Protocol):
    """Repository interface for forecast persistence."""

    async def create(self, forecast: Forecast) -> Forecast:
        """Insert a forecast. Raises DuplicateRecordError on a (company, hour) collision."""
        ...

    async def get_by_company_time(self, company_id: uuid.UUID, forecast_time: datetime) -> Forecast | None:
        """Retrieve the forecast for a company hour."""
        ...

    async def exists(self, company_id: uuid.UUID, forecast_time: datetime) -> bool:
        """Return whether a forecast already exists for a company hour."""
        ...

    async def list_forecast_times(
        self, company_id: uuid.UUID, start: datetime, end: datetime
    ) -> set[datetime]:
        """Return the forecast hours already stored with start <= forecast_time <= end."""
        ...

    async def delete_older_than(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        """Delete the companies' forecasts with forecast_time < cutoff."""
        ...


@runtime_checkable
class IAnomalyThresholdRepository(Protocol):
    """Threshold config store."""

    async def get_active(self, company_id: uuid.UUID) -> AnomalyThreshold | None:
        """Return the company's active threshold row, if configured."""
        ...


@runtime_checkable
class IEnergyRateRepository(Protocol):
    """Rate table."""

    async def get_by_country(self, country_id: uuid.UUID) -> EnergyRate | None:
        """Return the tariff for a country, if configured."""
        ...


@runtime_checkable
class IAlarmRepository(Protocol):
    """Repository interface for alarm persistence."""

    async def create(self, alarm: Alarm) -> Alarm:
        """Persist a new alarm."""
        ...

    async def delete_created_before(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        """Delete the companies' alarms created before cutoff."""
        ...


@runtime_checkable
class IDeviceStatusHistoryRepository(Protocol):
    """Device status history, the source of installation counts."""

    async def count_distinct_devices_between(
        self, company_id: uuid.UUID, start: datetime, end: datetime
    ) -> int:
        """Count distinct company devices with a status row created in [start, end)."""
        ...

    async def delete_created_before(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        """Delete status rows of the companies' devices created before cutoff."""
        ...


@runtime_checkable
class IApiCallLogRepository(Protocol):
    """Chargeable-API-call log."""

    async def count_chargeable_between(self, company_id: uuid.UUID, start: datetime, end: datetime) -> int:
        """Count chargeable calls with start <= request_time < end."""
        ...


@runtime_checkable
class IMeteredUsageRepository(Protocol):
    """Repository interface for daily metered usage."""

    async def create(self, usage: MeteredUsage) -> MeteredUsage:
        """Persist a new metered usage row."""
        ...

    async def update(self, usage: MeteredUsage) -> MeteredUsage:
        """Flush changes to an existing row and stamp updated_at."""
        ...

    async def get_by_company_date(self, company_id: uuid.UUID, usage_date: date) -> MeteredUsage | None:
        """Retrieve a company's row for one day."""
        ...

    async def get_earliest(self, company_id: uuid.UUID) -> MeteredUsage | None:
        """Return the company's row with the smallest usage_date."""
        ...

    async def list_between(self, company_id: uuid.UUID, start: date, end: date) -> list[MeteredUsage]:
        """List rows with start <= usage_date <= end ordered by usage_date."""
        ...


@runtime_checkable
class ISubscriptionRepository(Protocol):
    """Subscription store."""

    async def list_active_on(self, company_id: uuid.UUID, day: date) -> list[Subscription]:
        """List subscriptions with start_date <= day and (end_date is null or day < end_date)."""
        ...


@runtime_checkable
class IInvoiceRepository(Protocol):
    """Repository interface for invoice persistence."""

    async def create(self, invoice: Invoice) -> Invoice:
        """Persist a new invoice."""
        ...

    async def update(self, invoice: Invoice) -> Invoice:
        """Flush changes to an existing invoice and stamp updated_at."""
        ...

    async def get_by_company_date(self, company_id: uuid.UUID, usage_date: date) -> Invoice | None:
        """Retrieve a company's invoice for one usage day."""
        ...


@runtime_checkable
class IAuthArtifactRepository(Protocol):
    """Global auth artifacts pruned by retention."""

    async def delete_blacklisted_tokens_before(self, cutoff: datetime) -> int:
        """Delete blacklisted tokens created before cutoff or with no creation instant."""
        ...

    async def delete_two_factor_codes_before(self, cutoff: datetime) -> int:
        """Delete two-factor codes created before cutoff."""
        ...


@runtime_checkable
class IStorageUsageProvider(Protocol):
    """Storage-usage provider."""

    async def get_storage_usage_bytes(self, company_id: uuid.UUID) -> int:
        """Return the company's current total storage consumption in bytes."""
        ...


@runtime_checkable
class IBatchStore(Protocol):
    """One unit of work: every repository bound to the same session."""

    companies: ICompanyRepository
    devices: IDeviceRepository
    readings: IUsageReadingRepository
    forecast_models: IForecastModelRepository
    forecasts: IForecastRepository
    thresholds: IAnomalyThresholdRepository
    energy_rates: IEnergyRateRepository
    alarms: IAlarmRepository
    status_history: IDeviceStatusHistoryRepository
    api_calls: IApiCallLogRepository
    metered_usages: IMeteredUsageRepository
    subscriptions: ISubscriptionRepository
    invoices: IInvoiceRepository
    auth_artifacts: IAuthArtifactRepository

    def savepoint(self) -> AbstractAsyncContextManager[object]:
        """Open a nested transaction that rolls back alone on error."""
        ...

    async def commit(self) -> None:
        """Commit the unit of work."""
        ...

    async def rollback(self) -> None:
        """Roll back the unit of work."""
        ...


StoreFactory = Callable[[], AbstractAsyncContextManager[IBatchStore]]
