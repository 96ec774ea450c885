"""Everse batch process entry point.

Runs the forecast, alarm, metered-usage, billing, and retention jobs on the
schedule table from settings until SIGINT or SIGTERM. ``--once JOB`` runs a
single job immediately and exits.
"""

import argparse
import asyncio
import signal
from collections.abc import Sequence

import structlog

from everse_batch.adapters.database import create_engine, create_session_factory
from everse_batch.adapters.repositories import build_store_factory
from everse_batch.adapters.storage_usage import PostgresStorageUsageProvider
from everse_batch.core.interfaces import IStorageUsageProvider, StoreFactory
from everse_batch.core.pricing import InvoicePricingPolicy
from everse_batch.core.services import (
    AnomalyAlarmService,
    BillingService,
    MeteredUsageService,
    RetentionService,
    UsageForecastService,
)
from everse_batch.jobs.scheduler import AsyncJobRunner, build_schedules
from everse_batch.observability import configure_logging
from everse_batch.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def build_runner(
    settings: Settings,
    store_factory: StoreFactory,
    storage_usage: IStorageUsageProvider,
) -> AsyncJobRunner:
    """Wire every engine into a runner using the configured schedule table."""
    forecast = UsageForecastService(store_factory, settings)
    alarms = AnomalyAlarmService(store_factory, settings)
    metered_usage = MeteredUsageService(store_factory)
    billing = BillingService(store_factory, storage_usage, InvoicePricingPolicy.from_settings(settings))
    retention = RetentionService(store_factory, settings)

    jobs = {
        "forecast": forecast.generate_monthly_forecasts,
        "alarm": alarms.evaluate_last_hour,
        "retention": retention.purge_expired,
        "metered_usage": metered_usage.reconcile_all,
        "billing": billing.reconcile_all,
    }
    runner = AsyncJobRunner()
    for name, schedule in build_schedules(settings).items():
        runner.register(schedule, jobs[name])
    return runner


async def run(settings: Settings, once: str | None = None) -> None:
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    runner = build_runner(
        settings,
        build_store_factory(session_factory),
        PostgresStorageUsageProvider(session_factory),
    )
    logger.info("everse-batch starting", service=settings.service_name, jobs=runner.job_names)
    try:
        if once is not None:
            await runner.run_job(once)
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, runner.stop)
        await runner.run_forever()
    finally:
        await engine.dispose()
        logger.info("everse-batch shutting down")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="everse-batch", description=__doc__)
    parser.add_argument(
        "--once",
        choices=["forecast", "alarm", "retention", "metered_usage", "billing"],
        help="run a single job now and exit",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    asyncio.run(run(settings, once=args.once))


if __name__ == "__main__":
    main()
