from datetime import date
from decimal import Decimal
from unittest import mock

from django.test import TestCase, override_settings

from finance.exceptions import ConflictError, ValidationError
from finance.models import Invoice
from finance.services.invoicing import generate_monthly_invoices, month_bounds, void_invoice
from finance.services.payments import record_payment
from finance.tests.factories import make_invoice, make_tenant, make_unit
from tenant.models import Tenant


class MonthlyInvoiceTestCase(TestCase):

    def setUp(self):
        self.tenant = make_tenant(make_unit(monthly_rent=Decimal('12000.00')))
        self.inactive = make_tenant(status=Tenant.TenantStatus.MOVED_OUT)

    @override_settings(LEDGER_RENT_DUE_DAY=5)
    def test_month_bounds(self):
        self.assertEqual(
            month_bounds(2024, 2), (date(2024, 2, 1), date(2024, 2, 29), date(2024, 2, 5)))

    @override_settings(LEDGER_RENT_DUE_DAY=31)
    def test_due_day_is_clamped_to_month_end(self):
        self.assertEqual(month_bounds(2023, 2)[2], date(2023, 2, 28))

    def test_generates_one_invoice_per_active_tenant(self):
        result = generate_monthly_invoices(2024, 3)

        self.assertEqual(len(result.created), 1)
        invoice = result.created[0]
        self.assertEqual(invoice.tenant, self.tenant)
        self.assertEqual(invoice.amount, Decimal('12000.00'))
        self.assertEqual(invoice.balance, Decimal('12000.00'))
        self.assertEqual(invoice.opening_balance, Decimal('0.00'))
        self.assertEqual(invoice.items.count(), 1)
        self.assertEqual(invoice.rental_property, self.tenant.unit.property)

    def test_second_run_skips_billed_tenants(self):
        generate_monthly_invoices(2024, 3)
        result = generate_monthly_invoices(2024, 3)

        self.assertEqual(result.created, [])
        self.assertEqual(result.skipped, [self.tenant.pk])
        self.assertEqual(Invoice.objects.count(), 1)

    def test_existing_credit_is_not_applied_to_generated_invoice(self):
        record_payment(self.tenant.pk, '1000', 'cash', external_reference='EARLY', notify=False)

        invoice = generate_monthly_invoices(2024, 3).created[0]

        self.assertEqual(invoice.balance, Decimal('12000.00'))


class VoidInvoiceTestCase(TestCase):

    def setUp(self):
        self.tenant = make_tenant()
        self.invoice = make_invoice(self.tenant, '5000.00', date(2024, 1, 5))

    def test_void_requires_reason(self):
        with self.assertRaises(ValidationError):
            void_invoice(self.invoice.pk, '')

    def test_void_unpaid_invoice(self):
        invoice = void_invoice(self.invoice.pk, 'Tenant moved out early')

        self.assertEqual(invoice.status, Invoice.Status.VOID)
        self.assertIsNotNone(invoice.voided_at)

    def test_cannot_void_with_live_allocations(self):
        record_payment(self.tenant.pk, '100', 'cash', external_reference='V-1', notify=False)

        with self.assertRaises(ConflictError):
            void_invoice(self.invoice.pk, 'Mistake')

    def test_invoice_with_allocations_cannot_be_deleted(self):
        record_payment(self.tenant.pk, '100', 'cash', external_reference='V-2', notify=False)

        with self.assertRaises(ConflictError):
            self.invoice.delete()

    def test_duplicate_period_conflicts(self):
        with self.assertRaises(ConflictError):
            make_invoice(self.tenant, '5000.00', date(2024, 1, 5))


class InvoiceNumberTestCase(TestCase):

    def setUp(self):
        self.tenant = make_tenant()
        self.invoice = make_invoice(self.tenant, '5000.00', date(2024, 1, 5))

    def test_number_collision_is_retried(self):
        taken = self.invoice.invoice_number
        with mock.patch.object(Invoice, 'generate_invoice_number', side_effect=[taken, 'INV-RETRY-0001']):
            with self.assertLogs('finance.services.invoicing', level='WARNING'):
                invoice = make_invoice(self.tenant, '5000.00', date(2024, 2, 5))

        self.assertEqual(invoice.invoice_number, 'INV-RETRY-0001')
        self.assertEqual(invoice.balance, Decimal('5000.00'))
        self.assertEqual(Invoice.objects.filter(tenant=self.tenant).count(), 2)

    def test_persistent_collision_is_not_reported_as_duplicate_period(self):
        taken = self.invoice.invoice_number
        with mock.patch.object(Invoice, 'generate_invoice_number', return_value=taken):
            with self.assertRaises(ConflictError) as ctx:
                make_invoice(self.tenant, '5000.00', date(2024, 2, 5))

        self.assertIn('invoice number', str(ctx.exception))
        self.assertEqual(Invoice.objects.filter(tenant=self.tenant).count(), 1)
