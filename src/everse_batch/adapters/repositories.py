"""SQLAlchemy repositories for the Everse batch core.

All repositories implement the interfaces defined in core/interfaces.py and
share one AsyncSession per unit of work through SqlBatchStore. Audit
timestamps are stamped here, never by the engines' callers.
"""

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Generic, TypeVar

import structlog
from sqlalchemy import Delete, Select, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from everse_batch.core.errors import DuplicateRecordError
from everse_batch.core.interfaces import StoreFactory
from everse_batch.core.models import (
    Alarm,
    AnomalyThreshold,
    ApiCallLog,
    BlacklistedToken,
    Company,
    Device,
    DeviceStatusHistory,
    EnergyRate,
    EverseModel,
    Forecast,
    ForecastModelOutput,
    Invoice,
    MeteredUsage,
    Subscription,
    TwoFactorAuthCode,
    UsageReading,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=EverseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseRepository(Generic[ModelT]):
    """Shared create / get / update behaviour for a single model."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def create(self, instance: ModelT) -> ModelT:
        """Insert a row, stamping created_at when the caller left it unset.

        Raises:
            DuplicateRecordError: The insert violated a unique constraint.
        """
        if instance.created_at is None:
            instance.created_at = _utcnow()
        self._session.add(instance)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            logger.debug("duplicate_insert_rejected", table=self._model.__tablename__)
            raise DuplicateRecordError(f"{self._model.__tablename__}: {exc.orig}") from exc
        return instance

    async def update(self, instance: ModelT) -> ModelT:
        instance.updated_at = _utcnow()
        await self._session.flush()
        return instance

    async def get_by_id(self, record_id: uuid.UUID) -> ModelT | None:
        return await self._session.get(self._model, record_id)

    def _company_device_ids(self, company_ids: Sequence[uuid.UUID]) -> Select:
        return select(Device.id).where(Device.company_id.in_(company_ids))

    async def _delete(self, statement: Delete) -> int:
        result = await self._session.execute(statement.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)


class CompanyRepository(BaseRepository[Company]):
    """Repository for ev_companies — the tenant directory."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Company)

    async def list_all(self) -> list[Company]:
        result = await self._session.execute(select(Company).order_by(Company.created_at))
        return list(result.scalars().all())


class DeviceRepository(BaseRepository[Device]):
    """Repository for ev_devices."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Device)

    async def list_by_company(self, company_id: uuid.UUID) -> list[Device]:
        result = await self._session.execute(select(Device).where(Device.company_id == company_id))
        return list(result.scalars().all())

    async def count_by_status(self, company_id: uuid.UUID, status: str) -> int:
        query = select(func.count(Device.id)).where(Device.company_id == company_id, Device.status == status)
        result = await self._session.execute(query)
        return int(result.scalar() or 0)


class UsageReadingRepository(BaseRepository[UsageReading]):
    """Repository for ev_usage_readings — hour-bucketed facility usage."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, UsageReading)

    async def sum_for_device_at(self, device_id: uuid.UUID, reference_time: datetime) -> Decimal | None:
        query = select(func.sum(UsageReading.facility_usage)).where(
            UsageReading.device_id == device_id,
            UsageReading.reference_time == reference_time,
        )
        result = await self._session.execute(query)
        return result.scalar()

    async def sum_for_company_between(self, company_id: uuid.UUID, start: datetime, end: datetime) -> Decimal:
        """Sum a company's readings in the local window [start, end).

        Args:
            company_id: Company whose devices are summed.
            start: Window start, tenant-local (inclusive).
            end: Window end, tenant-local (exclusive).

        Returns:
            Total usage, Decimal 0 when nothing was recorded.
        """
        query = (
            select(func.coalesce(func.sum(UsageReading.facility_usage), 0))
            .join(Device, Device.id == UsageReading.device_id)
            .where(
                Device.company_id == company_id,
                UsageReading.reference_time >= start,
                UsageReading.reference_time < end,
            )
        )
        result = await self._session.execute(query)
        return Decimal(result.scalar() or 0)

    async def delete_older_than(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        return await self._delete(
            delete(UsageReading).where(
                UsageReading.device_id.in_(self._company_device_ids(company_ids)),
                UsageReading.reference_time < cutoff,
            )
        )


class ForecastModelRepository:
    """Read-only access to ev_forecast_model_outputs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_company_time(
        self, company_id: uuid.UUID, forecast_time: datetime
    ) -> ForecastModelOutput | None:
        query = (
            select(ForecastModelOutput)
            .where(
                ForecastModelOutput.company_id == company_id,
                ForecastModelOutput.forecast_time == forecast_time,
            )
            .order_by(ForecastModelOutput.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()


class ForecastRepository(BaseRepository[Forecast]):
    """Repository for ev_forecasts — one row per company hour."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Forecast)

    async def get_by_company_time(self, company_id: uuid.UUID, forecast_time: datetime) -> Forecast | None:
        query = select(Forecast).where(Forecast.company_id == company_id, Forecast.forecast_time == forecast_time)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def exists(self, company_id: uuid.UUID, forecast_time: datetime) -> bool:
        query = select(
            select(Forecast.id)
            .where(Forecast.company_id == company_id, Forecast.forecast_time == forecast_time)
            .exists()
        )
        result = await self._session.execute(query)
        return bool(result.scalar())

    async def list_forecast_times(
        self, company_id: uuid.UUID, start: datetime, end: datetime
    ) -> set[datetime]:
        query = select(Forecast.forecast_time).where(
            Forecast.company_id == company_id,
            Forecast.forecast_time >= start,
            Forecast.forecast_time <= end,
        )
        result = await self._session.execute(query)
        return set(result.scalars().all())

    async def delete_older_than(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        return await self._delete(
            delete(Forecast).where(Forecast.company_id.in_(company_ids), Forecast.forecast_time < cutoff)
        )


class AnomalyThresholdRepository(BaseRepository[AnomalyThreshold]):
    """Repository for ev_anomaly_thresholds."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AnomalyThreshold)

    async def get_active(self, company_id: uuid.UUID) -> AnomalyThreshold | None:
        query = (
            select(AnomalyThreshold)
            .where(AnomalyThreshold.company_id == company_id, AnomalyThreshold.is_active.is_(True))
            .order_by(AnomalyThreshold.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()


class EnergyRateRepository(BaseRepository[EnergyRate]):
    """Repository for ev_energy_rates."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, EnergyRate)

    async def get_by_country(self, country_id: uuid.UUID) -> EnergyRate | None:
        result = await self._session.execute(select(EnergyRate).where(EnergyRate.country_id == country_id))
        return result.scalar_one_or_none()


class AlarmRepository(BaseRepository[Alarm]):
    """Repository for ev_alarms."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Alarm)

    async def delete_created_before(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        return await self._delete(
            delete(Alarm).where(Alarm.company_id.in_(company_ids), Alarm.created_at < cutoff)
        )


class DeviceStatusHistoryRepository(BaseRepository[DeviceStatusHistory]):
    """Repository for ev_device_status_history."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, DeviceStatusHistory)

    async def count_distinct_devices_between(
        self, company_id: uuid.UUID, start: datetime, end: datetime
    ) -> int:
        query = (
            select(func.count(func.distinct(DeviceStatusHistory.device_id)))
            .join(Device, Device.id == DeviceStatusHistory.device_id)
            .where(
                Device.company_id == company_id,
                DeviceStatusHistory.created_at >= start,
                DeviceStatusHistory.created_at < end,
            )
        )
        result = await self._session.execute(query)
        return int(result.scalar() or 0)

    async def delete_created_before(self, company_ids: Sequence[uuid.UUID], cutoff: datetime) -> int:
        return await self._delete(
            delete(DeviceStatusHistory).where(
                DeviceStatusHistory.device_id.in_(self._company_device_ids(company_ids)),
                DeviceStatusHistory.created_at < cutoff,
            )
        )


class ApiCallLogRepository(BaseRepository[ApiCallLog]):
    """Repository for ev_api_call_logs."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, ApiCallLog)

    async def count_chargeable_between(self, company_id: uuid.UUID, start: datetime, end: datetime) -> int:
        query = select(func.count(ApiCallLog.id)).where(
            ApiCallLog.company_id == company_id,
            ApiCallLog.is_charge.is_(True),
            ApiCallLog.request_time >= start,
            ApiCallLog.request_time < end,
        )
        result = await self._session.execute(query)
        return int(result.scalar() or 0)


class MeteredUsageRepository(BaseRepository[MeteredUsage]):
    """Repository for ev_metered_usages — daily chargeable usage per company."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, MeteredUsage)

    async def get_by_company_date(self, company_id: uuid.UUID, usage_date: date) -> MeteredUsage | None:
        query = select(MeteredUsage).where(
            MeteredUsage.company_id == company_id,
            MeteredUsage.usage_date == usage_date,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def get_earliest(self, company_id: uuid.UUID) -> MeteredUsage | None:
        query = (
            select(MeteredUsage)
            .where(MeteredUsage.company_id == company_id)
            .order_by(MeteredUsage.usage_date.asc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def list_between(self, company_id: uuid.UUID, start: date, end: date) -> list[MeteredUsage]:
        query = (
            select(MeteredUsage)
            .where(
                MeteredUsage.company_id == company_id,
                MeteredUsage.usage_date >= start,
                MeteredUsage.usage_date <= end,
            )
            .order_by(MeteredUsage.usage_date.asc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())


class SubscriptionRepository(BaseRepository[Subscription]):
    """Repository for ev_subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Subscription)

    async def list_active_on(self, company_id: uuid.UUID, day: date) -> list[Subscription]:
        query = select(Subscription).where(
            Subscription.company_id == company_id,
            Subscription.start_date <= day,
            or_(Subscription.end_date.is_(None), Subscription.end_date > day),
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())


class InvoiceRepository(BaseRepository[Invoice]):
    """Repository for ev_invoices."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Invoice)

    async def get_by_company_date(self, company_id: uuid.UUID, usage_date: date) -> Invoice | None:
        query = select(Invoice).where(Invoice.company_id == company_id, Invoice.usage_date == usage_date)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()


class AuthArtifactRepository:
    """Retention access to ev_blacklisted_tokens and ev_two_factor_auth_codes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def delete_blacklisted_tokens_before(self, cutoff: datetime) -> int:
        statement = delete(BlacklistedToken).where(
            or_(BlacklistedToken.created_at.is_(None), BlacklistedToken.created_at < cutoff)
        )
        result = await self._session.execute(statement.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)

    async def delete_two_factor_codes_before(self, cutoff: datetime) -> int:
        statement = delete(TwoFactorAuthCode).where(TwoFactorAuthCode.created_at < cutoff)
        result = await self._session.execute(statement.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)


class SqlBatchStore:
    """Every repository bound to one AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.companies = CompanyRepository(session)
        self.devices = DeviceRepository(session)
        self.readings = UsageReadingRepository(session)
        self.forecast_models = ForecastModelRepository(session)
        self.forecasts = ForecastRepository(session)
        self.thresholds = AnomalyThresholdRepository(session)
        self.energy_rates = EnergyRateRepository(session)
        self.alarms = AlarmRepository(session)
        self.status_history = DeviceStatusHistoryRepository(session)
        self.api_calls = ApiCallLogRepository(session)
        self.metered_usages = MeteredUsageRepository(session)
        self.subscriptions = SubscriptionRepository(session)
        self.invoices = InvoiceRepository(session)
        self.auth_artifacts = AuthArtifactRepository(session)

    def savepoint(self) -> AbstractAsyncContextManager[object]:
        return self._session.begin_nested()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


def build_store_factory(session_factory: async_sessionmaker[AsyncSession]) -> StoreFactory:
    """Wrap a session factory so each unit of work commits on success and rolls back on error."""

    @asynccontextmanager
    async def open_store() -> AsyncIterator[SqlBatchStore]:
        async with session_factory() as session:
            store = SqlBatchStore(session)
            try:
                yield store
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return open_store
