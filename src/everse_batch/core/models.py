"""SQLAlchemy ORM models for the Everse batch analytics and billing core.

All tables use the `ev_` prefix. Every table extends EverseModel which
supplies id (UUID), created_at, and updated_at columns. Audit timestamps are
plain columns set explicitly by the persistence adapter.

Domain model:
  Country              — Country with language tag and IANA time zone
  Company              — Tenant; owns devices, thresholds, subscriptions, invoices
  Device               — Metering device with NORMAL | ERROR health status
  DeviceStatusHistory  — Append-only device status transitions
  UsageReading         — Hour-bucketed facility usage per device (tenant-local time)
  Forecast             — One hourly usage forecast per (company, forecast_time)
  ForecastModelOutput  — Precomputed forecasts written by the external model
  AnomalyThreshold     — Per-device hourly usage bounds; at most one active per company
  EnergyRate           — Per-country base rates and peak / mid-peak / off-peak hour sets
  Alarm                — Emitted usage and bill alarms (append-only)
  ApiCallLog           — API request log used for chargeable-call metering
  MeteredUsage         — Daily chargeable usage counts per company
  Subscription         — Subscribed service with an active date interval
  Invoice              — Daily invoice per company

Auth artifacts pruned by retention:
  BlacklistedToken     — Revoked JWTs
  TwoFactorAuthCode    — Short-lived two-factor codes
"""
from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class CompanyType(str, enum.Enum):
    """Rate class of a company. FEMS bills at the industrial rate, BEMS at the commercial rate."""

    FEMS = "FEMS"
    BEMS = "BEMS"


class DeviceStatus(str, enum.Enum):
    NORMAL = "NORMAL"
    ERROR = "ERROR"


class AlarmType(str, enum.Enum):
    MIN_USAGE = "MIN_USAGE"
    MAX_USAGE = "MAX_USAGE"
    FORECAST_BILL_EXCEEDED = "FORECAST_BILL_EXCEEDED"


class AlarmPriority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RatePeriod(str, enum.Enum):
    """Hour-of-day pricing bucket."""

    PEAK = "PEAK"
    MID_PEAK = "MID_PEAK"
    OFF_PEAK = "OFF_PEAK"
    UNKNOWN = "UNKNOWN"


class SubscriptionService(str, enum.Enum):
    REPORT_DOWNLOAD = "REPORT_DOWNLOAD"
    AI_ENERGY_USAGE_FORECAST = "AI_ENERGY_USAGE_FORECAST"
    INTERACTIVE_AI = "INTERACTIVE_AI"


class InvoiceStatus(str, enum.Enum):
    OUTSTANDING = "OUTSTANDING"
    COMPLETE = "COMPLETE"


class PaymentMethod(str, enum.Enum):
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"


class Base(DeclarativeBase):
    """Declarative base shared by all Everse tables."""


class EverseModel(Base):
    """Abstract base supplying the primary key and audit timestamps."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Creation instant (UTC), set by the persistence adapter",
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last modification instant (UTC), set by the persistence adapter",
    )


class Country(EverseModel):
    """A country whose zone and language apply to every company registered in it.

    Table: ev_countries
    """

    __tablename__ = "ev_countries"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    language_code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="BCP 47 language tag used for alarm messages, e.g. en | ko-KR",
    )
    time_zone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="IANA time zone, e.g. Asia/Seoul",
    )


class Company(EverseModel):
    """A subscribing tenant.

    created_at doubles as the registration instant from which metered usage
    is reconciled.

    Table: ev_companies
    """

    __tablename__ = "ev_companies"

    country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_countries.id"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Rate class: FEMS | BEMS",
    )

    country: Mapped[Country] = relationship(lazy="joined")

    @property
    def time_zone(self) -> str:
        return self.country.time_zone

    @property
    def language_code(self) -> str:
        return self.country.language_code


class Device(EverseModel):
    """A metering device (IoT) installed at a company site.

    Table: ev_devices
    """

    __tablename__ = "ev_devices"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id"),
        nullable=False,
        index=True,
    )
    serial_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeviceStatus.NORMAL.value,
        comment="NORMAL | ERROR",
    )


class DeviceStatusHistory(EverseModel):
    """Append-only log of device status reports.

    Table: ev_device_status_history
    """

    __tablename__ = "ev_device_status_history"
    __table_args__ = (Index("ix_ev_device_status_history_device_created", "device_id", "created_at"),)

    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="NORMAL | ERROR")


class UsageReading(EverseModel):
    """Hour-bucketed facility usage for one device.

    Readings are appended by ingestion and only ever deleted by retention.

    Table: ev_usage_readings
    """

    __tablename__ = "ev_usage_readings"
    __table_args__ = (Index("ix_ev_usage_readings_device_reference", "device_id", "reference_time"),)

    device_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    facility_usage: Mapped[Decimal] = mapped_column(
        Numeric(18, 4),
        nullable=False,
        comment="Facility energy usage (kWh) for the hour",
    )
    reference_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        comment="Start of the reading hour, tenant-local wall clock",
    )


class Forecast(EverseModel):
    """Forecast usage for one company hour.

    Table: ev_forecasts
    """

    __tablename__ = "ev_forecasts"
    __table_args__ = (UniqueConstraint("company_id", "forecast_time", name="uq_ev_forecasts_company_time"),)

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    forecast_usage: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    forecast_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        comment="Forecast hour, tenant-local wall clock",
    )


class ForecastModelOutput(EverseModel):
    """Forecast rows produced by the externally trained model. Read-only here.

    Table: ev_forecast_model_outputs
    """

    __tablename__ = "ev_forecast_model_outputs"
    __table_args__ = (Index("ix_ev_forecast_model_outputs_company_time", "company_id", "forecast_time"),)

    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    forecast_usage: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    forecast_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class AnomalyThreshold(EverseModel):
    """Per-device hourly usage bounds for a company.

    Table: ev_anomaly_thresholds
    """

    __tablename__ = "ev_anomaly_thresholds"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lowest_hourly_usage: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    highest_hourly_usage: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="At most one active row per company",
    )


class EnergyRate(EverseModel):
    """Electricity tariff for a country.

    Table: ev_energy_rates
    """

    __tablename__ = "ev_energy_rates"

    country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_countries.id"),
        nullable=False,
        unique=True,
    )
    industrial_rate: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    commercial_rate: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    peak_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    mid_peak_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    off_peak_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    peak_hours: Mapped[list[int]] = mapped_column(JSONB, nullable=False, default=list)
    mid_peak_hours: Mapped[list[int]] = mapped_column(JSONB, nullable=False, default=list)
    off_peak_hours: Mapped[list[int]] = mapped_column(JSONB, nullable=False, default=list)


class Alarm(EverseModel):
    """An alarm raised for a company. Alarms are never updated by the batch core.

    Table: ev_alarms
    """

    __tablename__ = "ev_alarms"
    __table_args__ = (Index("ix_ev_alarms_company_created", "company_id", "created_at"),)

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    alarm_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="MIN_USAGE | MAX_USAGE | FORECAST_BILL_EXCEEDED",
    )
    priority: Mapped[str] = mapped_column(String(10), nullable=False, comment="HIGH | MEDIUM | LOW")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    notify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ApiCallLog(EverseModel):
    """One API request made on behalf of a company.

    Table: ev_api_call_logs
    """

    __tablename__ = "ev_api_call_logs"
    __table_args__ = (Index("ix_ev_api_call_logs_company_request", "company_id", "request_time"),)

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    request_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    request_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_charge: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether the call is billable",
    )


class MeteredUsage(EverseModel):
    """Chargeable usage counts for one company day.

    Table: ev_metered_usages
    """

    __tablename__ = "ev_metered_usages"
    __table_args__ = (UniqueConstraint("company_id", "usage_date", name="uq_ev_metered_usages_company_date"),)

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    usage_date: Mapped[date] = mapped_column(Date, nullable=False, comment="Tenant-local calendar day")
    api_call_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iot_installation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Subscription(EverseModel):
    """A subscribed service, active on days in [start_date, end_date).

    Table: ev_subscriptions
    """

    __tablename__ = "ev_subscriptions"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="REPORT_DOWNLOAD | AI_ENERGY_USAGE_FORECAST | INTERACTIVE_AI",
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True, comment="Exclusive; null = open-ended")


class Invoice(EverseModel):
    """Daily invoice for a company.

    amount is frozen once status is COMPLETE.

    Table: ev_invoices
    """

    __tablename__ = "ev_invoices"
    __table_args__ = (UniqueConstraint("company_id", "usage_date", name="uq_ev_invoices_company_date"),)

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    metered_usage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ev_metered_usages.id", ondelete="CASCADE"),
        nullable=False,
    )
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    subscription_services: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        comment="Snapshot of service tags active on usage_date",
    )
    storage_usage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.OUTSTANDING.value,
        comment="OUTSTANDING | COMPLETE",
    )
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentMethod.CARD.value)
    scheduled_payment_date: Mapped[date] = mapped_column(Date, nullable=False)


class BlacklistedToken(EverseModel):
    """A revoked access token.

    Table: ev_blacklisted_tokens
    """

    __tablename__ = "ev_blacklisted_tokens"

    token: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Legacy rows may lack a creation instant; those are always purged",
    )


class TwoFactorAuthCode(EverseModel):
    """A one-time two-factor authentication code.

    Table: ev_two_factor_auth_codes
    """

    __tablename__ = "ev_two_factor_auth_codes"

    member_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    auth_code: Mapped[str] = mapped_column(String(20), nullable=False)
