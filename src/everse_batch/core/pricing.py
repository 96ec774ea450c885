"""Energy tariff lookup and invoice pricing.

Pure computation, no I/O. All money and usage values are Decimal; rounding is
always ROUND_HALF_UP.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from everse_batch.core.models import (
    Company,
    CompanyType,
    EnergyRate,
    MeteredUsage,
    RatePeriod,
    SubscriptionService,
)
from everse_batch.settings import Settings

FOUR_PLACES = Decimal("0.0001")
BYTES_PER_GB = Decimal(1024**3)


def round4(value: Decimal) -> Decimal:
    """Round to 4 decimal places, half-up."""
    return value.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def classify_hour(rate: EnergyRate, hour_of_day: int) -> RatePeriod:
    """Place an hour of day in its pricing bucket.

    The three hour sets are assumed disjoint; the first match wins.
    """
    if hour_of_day in rate.peak_hours:
        return RatePeriod.PEAK
    if hour_of_day in rate.mid_peak_hours:
        return RatePeriod.MID_PEAK
    if hour_of_day in rate.off_peak_hours:
        return RatePeriod.OFF_PEAK
    return RatePeriod.UNKNOWN


def base_rate(company: Company, rate: EnergyRate) -> Decimal:
    """Industrial rate for FEMS companies, commercial rate for everyone else."""
    if company.company_type == CompanyType.FEMS:
        return Decimal(rate.industrial_rate)
    return Decimal(rate.commercial_rate)


def period_multiplier(rate: EnergyRate, period: RatePeriod) -> Decimal:
    if period == RatePeriod.PEAK:
        return Decimal(rate.peak_multiplier)
    if period == RatePeriod.MID_PEAK:
        return Decimal(rate.mid_peak_multiplier)
    if period == RatePeriod.OFF_PEAK:
        return Decimal(rate.off_peak_multiplier)
    return Decimal(1)


def effective_rate(company: Company, rate: EnergyRate, hour_of_day: int) -> Decimal:
    """Per-unit energy price for a company at an hour of day.

    Args:
        company: The company; its type selects the base rate.
        rate: The tariff for the company's country.
        hour_of_day: Local hour, 0-23.

    Returns:
        base rate x period multiplier, unrounded.
    """
    return base_rate(company, rate) * period_multiplier(rate, classify_hour(rate, hour_of_day))


@dataclass(frozen=True)
class InvoiceQuote:
    """Priced breakdown for one usage day."""

    api_call_charge: Decimal
    subscription_charge: Decimal
    storage_charge: Decimal
    installation_charge: Decimal

    @property
    def amount(self) -> Decimal:
        return round4(
            self.api_call_charge + self.subscription_charge + self.storage_charge + self.installation_charge
        )


@dataclass(frozen=True)
class InvoicePricingPolicy:
    """Daily invoice pricing.

    amount = api calls x api_call_rate
           + sum of daily rates of the active services
           + storage charge above the free allowance (whole GB, half-up)
           + device installations x iot_installation_rate
    """

    api_call_rate: Decimal
    iot_installation_rate: Decimal
    storage_rate_per_gb: Decimal
    free_storage_limit_gb: Decimal
    service_rates: dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "InvoicePricingPolicy":
        return cls(
            api_call_rate=settings.api_call_rate,
            iot_installation_rate=settings.iot_installation_rate,
            storage_rate_per_gb=settings.storage_rate_per_gb,
            free_storage_limit_gb=settings.free_storage_limit_gb,
            service_rates={
                SubscriptionService.REPORT_DOWNLOAD.value: settings.report_download_daily_rate,
                SubscriptionService.AI_ENERGY_USAGE_FORECAST.value: settings.ai_forecast_daily_rate,
                SubscriptionService.INTERACTIVE_AI.value: settings.interactive_ai_daily_rate,
            },
        )

    def storage_charge(self, storage_bytes: int) -> Decimal:
        free_bytes = self.free_storage_limit_gb * BYTES_PER_GB
        used = Decimal(storage_bytes)
        if used <= free_bytes:
            return Decimal(0)
        excess_gb = ((used - free_bytes) / BYTES_PER_GB).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return excess_gb * self.storage_rate_per_gb

    def quote(
        self,
        usage: MeteredUsage,
        services: Iterable[str],
        storage_bytes: int,
    ) -> InvoiceQuote:
        """Price one metered day. Unknown service tags price at zero."""
        subscription_charge = sum(
            (self.service_rates.get(service, Decimal(0)) for service in services),
            Decimal(0),
        )
        return InvoiceQuote(
            api_call_charge=Decimal(usage.api_call_count) * self.api_call_rate,
            subscription_charge=subscription_charge,
            storage_charge=self.storage_charge(storage_bytes),
            installation_charge=Decimal(usage.iot_installation_count) * self.iot_installation_rate,
        )

    def calculate_amount(self, usage: MeteredUsage, services: Iterable[str], storage_bytes: int) -> Decimal:
        return self.quote(usage, services, storage_bytes).amount
