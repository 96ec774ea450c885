"""Unit tests for MeteredUsageService."""

import uuid
from datetime import date, datetime, timezone

import pytest

from everse_batch.core.errors import DuplicateRecordError
from everse_batch.core.models import ApiCallLog, DeviceStatusHistory, MeteredUsage
from everse_batch.core.services.metered_usage_service import MeteredUsageService

# Registered 09:00 on 24 Feb in Seoul; the run covers 24, 25 and 26 Feb.
REGISTERED_AT = datetime(2026, 2, 24, 0, 0, tzinfo=timezone.utc)


def _api_call(company_id: uuid.UUID, request_time: datetime, is_charge: bool = True) -> ApiCallLog:
    return ApiCallLog(
        id=uuid.uuid4(),
        company_id=company_id,
        request_time=request_time,
        request_path="/api/v1/usage",
        is_charge=is_charge,
        created_at=request_time,
    )


def _status(device_id: uuid.UUID, created_at: datetime, status: str = "NORMAL") -> DeviceStatusHistory:
    return DeviceStatusHistory(id=uuid.uuid4(), device_id=device_id, status=status, created_at=created_at)


@pytest.fixture
def service(store_factory) -> MeteredUsageService:  # type: ignore[no-untyped-def]
    return MeteredUsageService(store_factory)


def _by_day(db, company_id):  # type: ignore[no-untyped-def]
    return {u.usage_date: u for u in db.metered_usages if u.company_id == company_id}


class TestReconcileMeteredUsage:
    """Tests for per-company daily usage upserts."""

    @pytest.mark.asyncio
    async def test_creates_one_row_per_local_day(self, service, store, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)

        result = await service.reconcile_metered_usage(store, company, now)

        assert result.created == 3
        assert result.updated == 0
        assert sorted(_by_day(db, company.id)) == [date(2026, 2, 24), date(2026, 2, 25), date(2026, 2, 26)]

    @pytest.mark.asyncio
    async def test_counts_only_chargeable_calls_by_local_day(self, service, store, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        other = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        db.api_calls.extend(
            [
                # 14:00 UTC on the 24th is 23:00 local, still the 24th
                _api_call(company.id, datetime(2026, 2, 24, 14, 0, tzinfo=timezone.utc)),
                # 16:00 UTC on the 24th is 01:00 local on the 25th
                _api_call(company.id, datetime(2026, 2, 24, 16, 0, tzinfo=timezone.utc)),
                _api_call(company.id, datetime(2026, 2, 25, 3, 0, tzinfo=timezone.utc)),
                _api_call(company.id, datetime(2026, 2, 25, 4, 0, tzinfo=timezone.utc), is_charge=False),
                _api_call(other.id, datetime(2026, 2, 25, 4, 0, tzinfo=timezone.utc)),
            ]
        )

        await service.reconcile_metered_usage(store, company, now)

        rows = _by_day(db, company.id)
        assert rows[date(2026, 2, 24)].api_call_count == 1
        assert rows[date(2026, 2, 25)].api_call_count == 2
        assert rows[date(2026, 2, 26)].api_call_count == 0

    @pytest.mark.asyncio
    async def test_installation_count_is_distinct_devices(self, service, store, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        first = db.add_device(company)
        second = db.add_device(company)
        db.add_device(company)
        db.status_history.extend(
            [
                _status(first.id, datetime(2026, 2, 25, 1, 0, tzinfo=timezone.utc)),
                _status(first.id, datetime(2026, 2, 25, 2, 0, tzinfo=timezone.utc), status="ERROR"),
                _status(second.id, datetime(2026, 2, 25, 3, 0, tzinfo=timezone.utc)),
            ]
        )

        await service.reconcile_metered_usage(store, company, now)

        rows = _by_day(db, company.id)
        assert rows[date(2026, 2, 25)].iot_installation_count == 2
        assert rows[date(2026, 2, 26)].iot_installation_count == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, service, store, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        db.api_calls.append(_api_call(company.id, datetime(2026, 2, 25, 3, 0, tzinfo=timezone.utc)))
        await service.reconcile_metered_usage(store, company, now)
        before = {day: (u.api_call_count, u.iot_installation_count) for day, u in _by_day(db, company.id).items()}

        result = await service.reconcile_metered_usage(store, company, now)

        after = {day: (u.api_call_count, u.iot_installation_count) for day, u in _by_day(db, company.id).items()}
        assert result.created == 0
        assert result.updated == 3
        assert len(db.metered_usages) == 3
        assert after == before

    @pytest.mark.asyncio
    async def test_late_logs_update_past_days(self, service, store, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        await service.reconcile_metered_usage(store, company, now)
        db.api_calls.append(_api_call(company.id, datetime(2026, 2, 24, 3, 0, tzinfo=timezone.utc)))

        await service.reconcile_metered_usage(store, company, now)

        assert _by_day(db, company.id)[date(2026, 2, 24)].api_call_count == 1

    @pytest.mark.asyncio
    async def test_failing_day_is_isolated(self, service, store, db, now: datetime, monkeypatch) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        original = store.api_calls.count_chargeable_between
        calls = {"n": 0}

        async def flaky(company_id, start, end):  # type: ignore[no-untyped-def]
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("log store unavailable")
            return await original(company_id, start, end)

        monkeypatch.setattr(store.api_calls, "count_chargeable_between", flaky)

        result = await service.reconcile_metered_usage(store, company, now)

        assert result.failed_days == 1
        assert result.created == 2
        assert date(2026, 2, 25) not in _by_day(db, company.id)

    @pytest.mark.asyncio
    async def test_concurrent_insert_is_overwritten(self, service, store, db, now: datetime, monkeypatch) -> None:  # type: ignore[no-untyped-def]
        company = db.add_company(time_zone="Asia/Seoul", created_at=REGISTERED_AT)
        db.api_calls.append(_api_call(company.id, datetime(2026, 2, 25, 3, 0, tzinfo=timezone.utc)))
        original = store.metered_usages.create

        async def racing_create(usage: MeteredUsage) -> MeteredUsage:
            if usage.usage_date == date(2026, 2, 25):
                # Another run inserts the same day between the lookup and the insert
                db.metered_usages.append(
                    MeteredUsage(
                        id=uuid.uuid4(),
                        company_id=company.id,
                        usage_date=usage.usage_date,
                        api_call_count=99,
                        iot_installation_count=99,
                    )
                )
                raise DuplicateRecordError("ev_metered_usages")
            return await original(usage)

        monkeypatch.setattr(store.metered_usages, "create", racing_create)

        result = await service.reconcile_metered_usage(store, company, now)

        assert result.failed_days == 0
        assert result.created == 2
        assert result.updated == 1
        assert len(db.metered_usages) == 3
        raced = _by_day(db, company.id)[date(2026, 2, 25)]
        assert (raced.api_call_count, raced.iot_installation_count) == (1, 0)


class TestReconcileAll:
    """Tests for the all-company driver."""

    @pytest.mark.asyncio
    async def test_failing_company_is_isolated(self, service, db, now: datetime) -> None:  # type: ignore[no-untyped-def]
        broken = db.add_company(created_at=REGISTERED_AT)
        broken.country.time_zone = "Not/AZone"
        healthy = db.add_company(created_at=REGISTERED_AT)

        summary = await service.reconcile_all(now=now)

        assert summary.failed_tenants == 1
        assert summary.created == 3
        assert {u.company_id for u in db.metered_usages} == {healthy.id}
