"""PostgreSQL storage-usage provider.

A company's storage usage is the total on-disk size (heap, indexes, and
TOAST) of every tenant-scoped table in which the company owns at least one
row. This mirrors how the platform has always billed storage: shared tables
are charged in full to every tenant that uses them.
"""

import uuid

import structlog
from sqlalchemy import Select, exists, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from everse_batch.core.models import (
    Alarm,
    AnomalyThreshold,
    ApiCallLog,
    Device,
    DeviceStatusHistory,
    Forecast,
    Invoice,
    MeteredUsage,
    Subscription,
    UsageReading,
)

logger = structlog.get_logger(__name__)

_TABLE_SIZE_SQL = text("SELECT pg_total_relation_size(CAST(:table_name AS regclass))")


def _ownership_checks(company_id: uuid.UUID) -> dict[str, Select]:
    """Existence query per tenant-scoped table."""
    device_ids = select(Device.id).where(Device.company_id == company_id)
    checks: dict[str, Select] = {}
    for model in (Device, Forecast, AnomalyThreshold, Alarm, ApiCallLog, MeteredUsage, Subscription, Invoice):
        checks[model.__tablename__] = select(exists().where(model.company_id == company_id))
    for model in (UsageReading, DeviceStatusHistory):
        checks[model.__tablename__] = select(exists().where(model.device_id.in_(device_ids)))
    return checks


class PostgresStorageUsageProvider:
    """Measure per-company storage from PostgreSQL relation sizes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_storage_usage_bytes(self, company_id: uuid.UUID) -> int:
        """Return the summed size of every table holding rows for the company.

        Args:
            company_id: Company to measure.

        Returns:
            Total bytes; 0 for a company with no rows anywhere.
        """
        total = 0
        async with self._session_factory() as session:
            for table_name, check in _ownership_checks(company_id).items():
                owns_rows = (await session.execute(check)).scalar()
                if not owns_rows:
                    continue
                size = (await session.execute(_TABLE_SIZE_SQL, {"table_name": table_name})).scalar()
                total += int(size or 0)
        logger.debug("storage_usage_measured", company_id=str(company_id), storage_bytes=total)
        return total
