import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from finance.exceptions import ConflictError, NotFoundError, ValidationError
from finance.models import Invoice, InvoiceLineItem, PaymentAllocation

logger = logging.getLogger(__name__)

INVOICE_NUMBER_ATTEMPTS = 3


@dataclass
class GenerationResult:
    created: List[Invoice] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)


def month_bounds(year, month):
    period_start = date(year, month, 1)
    period_end = period_start + relativedelta(months=1, days=-1)
    due_day = min(max(settings.LEDGER_RENT_DUE_DAY, 1), period_end.day)
    return period_start, period_end, period_start.replace(day=due_day)


def create_invoice(tenant, period_start, period_end, due_date, line_items, opening_balance=Decimal('0.00'),
                   user=None, notes=''):
    """
    Create an invoice with its line items and an initial balance.

    ``line_items`` is a list of dicts with ``description``, ``unit_price`` and
    optionally ``quantity`` and ``item_type``. ``opening_balance`` carries
    arrears from before the ledger existed.
    """
    if period_end <= period_start:
        raise ValidationError("Period end must be after period start")
    if opening_balance < 0:
        raise ValidationError("Opening balance cannot be negative")

    for attempt in range(INVOICE_NUMBER_ATTEMPTS):
        try:
            with transaction.atomic():
                invoice = Invoice.objects.create(
                    tenant=tenant,
                    period_start=period_start,
                    period_end=period_end,
                    due_date=due_date,
                    opening_balance=opening_balance,
                    created_by=user,
                    notes=notes,
                )
                for item in line_items:
                    InvoiceLineItem.objects.create(
                        invoice=invoice,
                        item_type=item.get('item_type', InvoiceLineItem.ItemType.RENT),
                        description=item['description'],
                        quantity=item.get('quantity', Decimal('1.00')),
                        unit_price=item['unit_price'],
                    )
                invoice.recalculate_totals()
            break
        except IntegrityError:
            if Invoice.objects.filter(
                    tenant=tenant, period_start=period_start, period_end=period_end).exists():
                raise ConflictError(
                    f"Tenant {tenant.pk} already has an invoice for {period_start} to {period_end}")
            # Another worker took the same invoice number.
            logger.warning(f"Invoice number collision for tenant {tenant.pk}, attempt {attempt + 1}")
    else:
        raise ConflictError(
            f"Could not assign an invoice number for tenant {tenant.pk} after {INVOICE_NUMBER_ATTEMPTS} attempts")

    invoice.refresh_from_db()
    logger.info(f"Created invoice {invoice.invoice_number} for tenant {tenant.pk}: {invoice.total_due}")
    return invoice


def generate_monthly_invoices(year, month, user=None, tenant_ids=None) -> GenerationResult:
    """Bill every active tenant their monthly rent. Tenants already billed for the month are skipped."""
    from tenant.models import Tenant

    period_start, period_end, due_date = month_bounds(year, month)
    tenants = Tenant.objects.filter(status=Tenant.TenantStatus.ACTIVE).select_related('unit', 'user')
    if tenant_ids:
        tenants = tenants.filter(pk__in=tenant_ids)
        if not tenants.exists():
            raise NotFoundError("None of the requested tenants is active")

    result = GenerationResult()
    for tenant in tenants.order_by('id'):
        if Invoice.objects.filter(tenant=tenant, period_start=period_start, period_end=period_end).exists():
            result.skipped.append(tenant.pk)
            continue

        rent = tenant.monthly_rent
        if rent is None or rent <= 0:
            logger.warning(f"Tenant {tenant.pk} has no monthly rent; no invoice generated")
            result.skipped.append(tenant.pk)
            continue

        try:
            invoice = create_invoice(
                tenant,
                period_start,
                period_end,
                due_date,
                [{
                    'item_type': InvoiceLineItem.ItemType.RENT,
                    'description': f"Rent for {period_start.strftime('%B %Y')}",
                    'unit_price': rent,
                }],
                user=user,
            )
        except ConflictError:
            result.skipped.append(tenant.pk)
            continue
        result.created.append(invoice)

    logger.info(
        f"Invoice generation for {period_start:%Y-%m}: "
        f"{len(result.created)} created, {len(result.skipped)} skipped"
    )
    return result


def void_invoice(invoice_id, reason, user=None):
    """Void an invoice that has no live allocations."""
    if not reason or not str(reason).strip():
        raise ValidationError("A reason is required to void an invoice")

    with transaction.atomic():
        try:
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFoundError(f"Invoice {invoice_id} not found")

        if invoice.status == Invoice.Status.VOID:
            return invoice
        if PaymentAllocation.objects.active().filter(invoice=invoice).exists():
            raise ConflictError(
                f"Invoice {invoice.invoice_number} has payments applied; reverse them before voiding")

        invoice.status = Invoice.Status.VOID
        invoice.voided_at = timezone.now()
        invoice.void_reason = reason[:255]
        invoice.save(update_fields=['status', 'voided_at', 'void_reason', 'updated_at'])
        logger.info(f"Invoice {invoice.invoice_number} voided by {user or 'system'}: {reason}")
        return invoice
