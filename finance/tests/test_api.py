from datetime import date
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from finance.models import DepositRefund, Invoice, Payment, UnmatchedPayment
from finance.services.payments import record_payment
from finance.services.unmatched import quarantine
from finance.tests.factories import make_invoice, make_property, make_tenant, make_unit, make_user, refresh

User = get_user_model()


class LedgerAPITestCase(APITestCase):

    def setUp(self):
        self.admin_user = User.objects.create_superuser(
            email='admin@example.com',
            username='admin',
            password='Password123!'
        )
        self.manager = make_user('property_manager')
        self.landlord = make_user('landlord')

        managed_property = make_property(manager=self.manager, landlord=self.landlord)
        self.tenant = make_tenant(make_unit(managed_property))
        self.other_tenant = make_tenant()

        self.invoice = make_invoice(self.tenant, '5000.00', date(2024, 1, 5))
        self.other_invoice = make_invoice(self.other_tenant, '7000.00', date(2024, 1, 5))

    def ids(self, response):
        return sorted(row['id'] for row in response.data['results'])


class InvoiceAPITestCase(LedgerAPITestCase):

    def test_admin_sees_all_invoices(self):
        self.client.force_authenticate(user=self.admin_user)

        response = self.client.get(reverse('invoice-list'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.ids(response), sorted([self.invoice.pk, self.other_invoice.pk]))

    def test_manager_and_landlord_see_their_property_only(self):
        for user in (self.manager, self.landlord):
            self.client.force_authenticate(user=user)

            response = self.client.get(reverse('invoice-list'))

            self.assertEqual(self.ids(response), [self.invoice.pk])

    def test_tenant_sees_own_invoices_only(self):
        self.client.force_authenticate(user=self.tenant.user)

        response = self.client.get(reverse('invoice-list'))
        self.assertEqual(self.ids(response), [self.invoice.pk])

        response = self.client.get(reverse('invoice-detail', args=[self.other_invoice.pk]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_tenant_cannot_void(self):
        self.client.force_authenticate(user=self.tenant.user)

        response = self.client.post(reverse('invoice-void', args=[self.invoice.pk]), {'reason': 'x'})

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_void_and_recalculate(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(reverse('invoice-recalculate', args=[self.invoice.pk]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Decimal(response.data['invoice']['balance']), Decimal('5000.00'))

        response = self.client.post(
            reverse('invoice-void', args=[self.invoice.pk]), {'reason': 'Duplicate'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(refresh(self.invoice).status, Invoice.Status.VOID)

    def test_manager_cannot_touch_other_property(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            reverse('invoice-void', args=[self.other_invoice.pk]), {'reason': 'x'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class PaymentAPITestCase(LedgerAPITestCase):

    def test_record_payment_and_replay(self):
        self.client.force_authenticate(user=self.manager)
        data = {
            'tenant_id': self.tenant.pk,
            'amount': '2000.00',
            'payment_method': 'bank_transfer',
            'external_reference': 'BANK-77',
        }

        response = self.client.post(reverse('payment-list'), data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Decimal(response.data['unallocated_amount']), Decimal('0.00'))

        replay = self.client.post(reverse('payment-list'), data, format='json')
        self.assertEqual(replay.status_code, status.HTTP_200_OK)
        self.assertEqual(replay.data['id'], response.data['id'])
        self.assertEqual(refresh(self.invoice).balance, Decimal('3000.00'))

    def test_conflicting_replay(self):
        self.client.force_authenticate(user=self.manager)
        data = {'tenant_id': self.tenant.pk, 'amount': '2000.00', 'payment_method': 'cash',
                'external_reference': 'CASH-9'}
        self.client.post(reverse('payment-list'), data, format='json')

        data['amount'] = '2100.00'
        response = self.client.post(reverse('payment-list'), data, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_manager_cannot_record_for_other_tenant(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(reverse('payment-list'), {
            'tenant_id': self.other_tenant.pk, 'amount': '100', 'payment_method': 'cash'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertFalse(Payment.objects.exists())

    def test_tenant_cannot_record_payment(self):
        self.client.force_authenticate(user=self.tenant.user)

        response = self.client.post(reverse('payment-list'), {
            'tenant_id': self.tenant.pk, 'amount': '100', 'payment_method': 'cash'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_explicit_allocation_errors_are_typed(self):
        payment, _ = record_payment(self.tenant.pk, '1000', 'cash', external_reference='C-1',
                                    allocate=False, notify=False)
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            reverse('payment-allocate', args=[payment.pk]),
            {'invoice_id': self.invoice.pk, 'amount': '1500.00'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('error', response.data)

    def test_allocate_then_reverse(self):
        payment, _ = record_payment(self.tenant.pk, '1000', 'cash', external_reference='C-2',
                                    allocate=False, notify=False)
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(reverse('payment-allocate', args=[payment.pk]), {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['allocations']), 1)
        self.assertEqual(refresh(self.invoice).balance, Decimal('4000.00'))

        response = self.client.post(reverse('payment-reverse', args=[payment.pk]), {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(
            reverse('payment-reverse', args=[payment.pk]), {'reason': 'Bounced'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(refresh(self.invoice).balance, Decimal('5000.00'))

    def test_confirm_pending_payment(self):
        payment, _ = record_payment(self.tenant.pk, '5000', 'bank_transfer', external_reference='BT-5',
                                    status=Payment.Status.PENDING, notify=False)
        self.client.force_authenticate(user=self.landlord)

        response = self.client.post(reverse('payment-confirm', args=[payment.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['payment']['status'], Payment.Status.COMPLETED)
        self.assertEqual(refresh(self.invoice).status, Invoice.Status.PAID)

    def test_tenant_balance(self):
        record_payment(self.tenant.pk, '1500', 'cash', external_reference='C-3', notify=False)
        self.client.force_authenticate(user=self.tenant.user)

        response = self.client.get(reverse('balance-detail', args=[self.tenant.pk]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outstanding_balance'], Decimal('3500.00'))

        response = self.client.get(reverse('balance-detail', args=[self.other_tenant.pk]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class UnmatchedPaymentAPITestCase(LedgerAPITestCase):

    def setUp(self):
        super().setUp()
        self.record, _ = quarantine(
            'QXY987', '5000', account_reference='??', reason='No unit matches',
            rental_property=self.tenant.unit.property)
        self.unplaced, _ = quarantine('QXY999', '2500', account_reference='H-12', reason='No unit matches')

    def test_tenant_never_sees_unmatched_payments(self):
        self.client.force_authenticate(user=self.tenant.user)

        response = self.client.get(reverse('unmatchedpayment-list'))

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_unplaced_money_is_hidden_from_landlords_and_managers(self):
        other_landlord = make_user('landlord')
        other_tenant = make_tenant(make_unit(make_property(landlord=other_landlord)))

        for user in (self.manager, self.landlord):
            self.client.force_authenticate(user=user)
            response = self.client.get(reverse('unmatchedpayment-list'))
            self.assertEqual(self.ids(response), [self.record.pk])

        self.client.force_authenticate(user=other_landlord)
        response = self.client.get(reverse('unmatchedpayment-list'))
        self.assertEqual(self.ids(response), [])

        for record in (self.unplaced, self.record):
            response = self.client.post(
                reverse('unmatchedpayment-resolve', args=[record.pk]), {'tenant_id': other_tenant.pk}, format='json')
            self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
            self.assertEqual(refresh(record).status, UnmatchedPayment.Status.PENDING)
        self.assertFalse(Payment.objects.filter(tenant=other_tenant).exists())

    def test_admin_resolves_unplaced_money(self):
        self.client.force_authenticate(user=self.admin_user)

        response = self.client.get(reverse('unmatchedpayment-list'))
        self.assertEqual(self.ids(response), sorted([self.record.pk, self.unplaced.pk]))

        response = self.client.post(
            reverse('unmatchedpayment-resolve', args=[self.unplaced.pk]),
            {'tenant_id': self.other_tenant.pk}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(refresh(self.unplaced).status, UnmatchedPayment.Status.RESOLVED)

    def test_filter_by_status(self):
        quarantine('QXY988', '100', reason='No unit matches')
        UnmatchedPayment.objects.filter(external_reference='QXY988').update(status=UnmatchedPayment.Status.IGNORED)
        self.client.force_authenticate(user=self.admin_user)

        response = self.client.get(reverse('unmatchedpayment-list'), {'status': 'pending'})

        self.assertEqual(self.ids(response), sorted([self.record.pk, self.unplaced.pk]))

    def test_set_status(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            reverse('unmatchedpayment-set-status', args=[self.record.pk]),
            {'status': 'ignored', 'notes': 'Test transfer'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(refresh(self.record).status, UnmatchedPayment.Status.IGNORED)

        response = self.client.post(
            reverse('unmatchedpayment-set-status', args=[self.record.pk]), {'status': 'resolved'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_resolve_twice(self):
        self.client.force_authenticate(user=self.manager)
        url = reverse('unmatchedpayment-resolve', args=[self.record.pk])

        response = self.client.post(url, {'tenant_id': self.tenant.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['payment']['external_reference'], 'QXY987')
        self.assertEqual(refresh(self.invoice).status, Invoice.Status.PAID)

        response = self.client.post(url, {'tenant_id': self.tenant.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)


class DepositRefundAPITestCase(LedgerAPITestCase):

    def test_request_and_disburse(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(reverse('depositrefund-list'), {
            'tenant': self.tenant.pk,
            'amount': '3000.00',
            'phone_number': '0712345678',
            'reason': 'Lease ended',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        refund = DepositRefund.objects.get(pk=response.data['id'])
        self.assertEqual(refund.requested_by, self.manager)

        with mock.patch('mpesa.services.DarajaClient') as client_class:
            client_class.return_value.b2c_payment.return_value = {
                'ConversationID': 'AG_2024_1', 'ResponseCode': '0'}
            response = self.client.post(reverse('depositrefund-disburse', args=[refund.pk]))

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(refresh(refund).status, DepositRefund.Status.PROCESSING)

    def test_refund_cannot_exceed_deposit(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(reverse('depositrefund-list'), {
            'tenant': self.tenant.pk,
            'amount': '999999.00',
            'phone_number': '0712345678',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
