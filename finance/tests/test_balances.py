from datetime import date
from decimal import Decimal

from django.test import TestCase, override_settings

from finance.exceptions import LedgerIntegrityError, NotFoundError
from finance.models import Invoice, PaymentAllocation
from finance.services import balances
from finance.services.payments import record_payment
from finance.tests.factories import make_invoice, make_tenant, refresh


class DeriveStatusTestCase(TestCase):

    def test_unpaid_invoice_is_issued(self):
        self.assertEqual(
            balances.derive_status(Decimal('5000'), Decimal('5000')), Invoice.Status.ISSUED)

    def test_part_payment_is_partially_paid(self):
        self.assertEqual(
            balances.derive_status(Decimal('1'), Decimal('5000')), Invoice.Status.PARTIALLY_PAID)

    def test_zero_or_negative_balance_is_paid(self):
        self.assertEqual(balances.derive_status(Decimal('0'), Decimal('5000')), Invoice.Status.PAID)
        self.assertEqual(balances.derive_status(Decimal('-10'), Decimal('5000')), Invoice.Status.PAID)

    def test_void_is_sticky(self):
        self.assertEqual(
            balances.derive_status(Decimal('0'), Decimal('5000'), Invoice.Status.VOID), Invoice.Status.VOID)

    def test_compute_balance_includes_opening_balance(self):
        self.assertEqual(
            balances.compute_balance(Decimal('5000'), Decimal('1500'), Decimal('2000')), Decimal('4500'))


class RecalculationTestCase(TestCase):

    def setUp(self):
        self.tenant = make_tenant()
        self.invoice = make_invoice(self.tenant, '5000.00', date(2024, 1, 5), opening_balance='1000.00')

    def test_new_invoice_balance_is_total_due(self):
        self.assertEqual(self.invoice.balance, Decimal('6000.00'))
        self.assertEqual(self.invoice.status, Invoice.Status.ISSUED)

    def test_recalculate_repairs_a_drifted_balance(self):
        record_payment(self.tenant.pk, '2500.00', 'cash', external_reference='CASH-1', notify=False)
        Invoice.objects.filter(pk=self.invoice.pk).update(balance=Decimal('42.00'), status=Invoice.Status.PAID)

        invoice = balances.recalculate_invoice(self.invoice.pk)

        self.assertEqual(invoice.balance, Decimal('3500.00'))
        self.assertEqual(invoice.status, Invoice.Status.PARTIALLY_PAID)

    def test_recalculate_is_idempotent(self):
        record_payment(self.tenant.pk, '2500.00', 'cash', external_reference='CASH-1', notify=False)

        first = balances.recalculate_for_tenant(self.tenant.pk)
        second = balances.recalculate_for_tenant(self.tenant.pk)

        self.assertEqual(first.updated, [])
        self.assertEqual(second.updated, [])
        self.assertEqual(refresh(self.invoice).balance, Decimal('3500.00'))

    @override_settings(LEDGER_ALLOW_INVOICE_CREDIT=False)
    def test_over_allocation_halts_recalculation_without_saving(self):
        payment, _ = record_payment(self.tenant.pk, '6000.00', 'cash', external_reference='CASH-2', notify=False)
        # Corrupt the postings behind the services' back.
        PaymentAllocation.objects.filter(payment=payment).update(amount=Decimal('7000.00'))

        with self.assertRaises(LedgerIntegrityError):
            balances.recalculate_invoice(self.invoice.pk)

        invoice = refresh(self.invoice)
        self.assertEqual(invoice.balance, Decimal('0.00'))
        self.assertEqual(invoice.status, Invoice.Status.PAID)

    @override_settings(LEDGER_ALLOW_INVOICE_CREDIT=False)
    def test_recalculate_all_collects_integrity_failures(self):
        other = make_invoice(self.tenant, '5000.00', date(2024, 2, 5))
        payment, _ = record_payment(self.tenant.pk, '6000.00', 'cash', external_reference='CASH-3', notify=False)
        PaymentAllocation.objects.filter(payment=payment, invoice=self.invoice).update(amount=Decimal('9000.00'))
        Invoice.objects.filter(pk=other.pk).update(balance=Decimal('1.00'))

        result = balances.recalculate_all()

        self.assertEqual(result.checked, 2)
        self.assertEqual([invoice_id for invoice_id, _ in result.failed], [self.invoice.pk])
        self.assertEqual(result.updated, [other.pk])
        self.assertEqual(refresh(other).balance, Decimal('5000.00'))

    @override_settings(LEDGER_ALLOW_INVOICE_CREDIT=True)
    def test_invoice_credit_allowed_when_enabled(self):
        payment, _ = record_payment(self.tenant.pk, '6000.00', 'cash', external_reference='CASH-4', notify=False)
        PaymentAllocation.objects.filter(payment=payment).update(amount=Decimal('6500.00'))

        invoice = balances.recalculate_invoice(self.invoice.pk)

        self.assertEqual(invoice.balance, Decimal('-500.00'))
        self.assertEqual(invoice.status, Invoice.Status.PAID)

    def test_outstanding_balance_ignores_void_invoices(self):
        make_invoice(self.tenant, '3000.00', date(2024, 2, 5))
        Invoice.objects.create(
            tenant=self.tenant, period_start=date(2024, 3, 1), period_end=date(2024, 3, 31),
            due_date=date(2024, 3, 5), amount=Decimal('900.00'), balance=Decimal('900.00'),
            status=Invoice.Status.VOID,
        )

        self.assertEqual(balances.outstanding_balance(self.tenant.pk), Decimal('9000.00'))

    def test_outstanding_balance_for_unknown_tenant(self):
        with self.assertRaises(NotFoundError):
            balances.outstanding_balance(999999)
