"""Batch engines of the Everse analytics and billing core."""

from everse_batch.core.services.alarm_service import AlarmRunSummary, AnomalyAlarmService
from everse_batch.core.services.billing_service import BillingService, InvoiceRunSummary
from everse_batch.core.services.forecast_service import ForecastRunSummary, UsageForecastService
from everse_batch.core.services.metered_usage_service import MeteredUsageRunSummary, MeteredUsageService
from everse_batch.core.services.retention_service import RetentionRunSummary, RetentionService

__all__ = [
    "AlarmRunSummary",
    "AnomalyAlarmService",
    "BillingService",
    "ForecastRunSummary",
    "InvoiceRunSummary",
    "MeteredUsageRunSummary",
    "MeteredUsageService",
    "RetentionRunSummary",
    "RetentionService",
    "UsageForecastService",
]
