"""Daily invoice reconciliation.

BillingService prices every MeteredUsage day of a company and creates or
refreshes the matching Invoice.

Key invariants:
- One Invoice per (company, usage_date).
- The subscription snapshot and storage usage are refreshed on every run.
- amount is recomputed only while the invoice is OUTSTANDING. A COMPLETE
  invoice keeps the amount that was charged.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone

import structlog

from everse_batch.core.clock import TenantClock, add_months_to_date
from everse_batch.core.errors import DuplicateRecordError
from everse_batch.core.interfaces import IBatchStore, IStorageUsageProvider, StoreFactory
from everse_batch.core.models import Company, Invoice, InvoiceStatus, MeteredUsage, PaymentMethod
from everse_batch.core.pricing import InvoicePricingPolicy

logger = structlog.get_logger(__name__)

PAYMENT_DAY_OF_MONTH = 10


def scheduled_payment_date(usage_date: date) -> date:
    """Payment falls on the 10th of the month after the usage day."""
    return add_months_to_date(usage_date, 1).replace(day=PAYMENT_DAY_OF_MONTH)


@dataclass
class InvoiceRunSummary:
    created: int = 0
    updated: int = 0
    amount_frozen: int = 0
    skipped_tenants: int = 0
    failed_days: int = 0
    failed_tenants: int = 0

    def add(self, other: "InvoiceRunSummary") -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)


class BillingService:
    """Create and refresh daily invoices from metered usage."""

    def __init__(
        self,
        store_factory: StoreFactory,
        storage_usage: IStorageUsageProvider,
        pricing: InvoicePricingPolicy,
    ) -> None:
        """Initialize BillingService with required dependencies."""
        self._store_factory = store_factory
        self._storage_usage = storage_usage
        self._pricing = pricing

    async def reconcile_all(self, now: datetime | None = None) -> InvoiceRunSummary:
        """Reconcile invoices for every company, one unit of work per company."""
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            companies = await store.companies.list_all()

        summary = InvoiceRunSummary()
        for company in companies:
            try:
                async with self._store_factory() as store:
                    summary.add(await self.reconcile_invoices(store, company, now))
            except Exception:
                summary.failed_tenants += 1
                logger.exception("billing_company_failed", company_id=str(company.id))

        logger.info("billing_run_completed", companies=len(companies), **asdict(summary))
        return summary

    async def reconcile_invoices(
        self,
        store: IBatchStore,
        company: Company,
        now: datetime | None = None,
    ) -> InvoiceRunSummary:
        """Create or refresh the invoice of every metered day through today.

        Args:
            store: Unit of work to read from and write to.
            company: The company to bill.
            now: Reference instant (UTC). Defaults to the current time.

        Returns:
            Per-company counts. A company without metered usage is reported
            as skipped.
        """
        now = now or datetime.now(timezone.utc)
        tally = InvoiceRunSummary()

        earliest = await store.metered_usages.get_earliest(company.id)
        if earliest is None:
            logger.warning("billing_skipped_no_metered_usage", company_id=str(company.id))
            tally.skipped_tenants += 1
            return tally

        today = TenantClock.for_company(company).today(now)
        usages = await store.metered_usages.list_between(company.id, earliest.usage_date, today)
        storage_bytes = await self._storage_usage.get_storage_usage_bytes(company.id)

        for usage in usages:
            try:
                async with store.savepoint():
                    outcome = await self._reconcile_day(store, company, usage, storage_bytes)
            except Exception:
                tally.failed_days += 1
                logger.exception(
                    "invoice_day_failed",
                    company_id=str(company.id),
                    usage_date=usage.usage_date.isoformat(),
                )
                continue
            if outcome == "created":
                tally.created += 1
            elif outcome == "frozen":
                tally.amount_frozen += 1
            else:
                tally.updated += 1
        return tally

    async def _reconcile_day(
        self,
        store: IBatchStore,
        company: Company,
        usage: MeteredUsage,
        storage_bytes: int,
    ) -> str:
        subscriptions = await store.subscriptions.list_active_on(company.id, usage.usage_date)
        services = sorted(subscription.service for subscription in subscriptions)
        amount = self._pricing.calculate_amount(usage, services, storage_bytes)

        invoice = await store.invoices.get_by_company_date(company.id, usage.usage_date)
        if invoice is None:
            try:
                async with store.savepoint():
                    await store.invoices.create(
                        Invoice(
                            company_id=company.id,
                            metered_usage_id=usage.id,
                            usage_date=usage.usage_date,
                            subscription_services=services,
                            storage_usage_bytes=storage_bytes,
                            amount=amount,
                            status=InvoiceStatus.OUTSTANDING.value,
                            payment_method=PaymentMethod.CARD.value,
                            scheduled_payment_date=scheduled_payment_date(usage.usage_date),
                        )
                    )
                return "created"
            except DuplicateRecordError:
                invoice = await store.invoices.get_by_company_date(company.id, usage.usage_date)
                if invoice is None:
                    raise

        invoice.subscription_services = services
        invoice.storage_usage_bytes = storage_bytes
        frozen = invoice.status == InvoiceStatus.COMPLETE
        if frozen:
            if invoice.amount != amount:
                logger.info(
                    "invoice_amount_frozen",
                    company_id=str(company.id),
                    usage_date=usage.usage_date.isoformat(),
                    charged=str(invoice.amount),
                    recomputed=str(amount),
                )
        else:
            invoice.amount = amount
        await store.invoices.update(invoice)
        return "frozen" if frozen else "updated"
