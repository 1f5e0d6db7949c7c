from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

from django.test import SimpleTestCase

from finance.exceptions import ValidationError
from mpesa.models import ExternalTransaction
from mpesa.payloads import (
    DisbursementResult, InboundDeposit, PushResult, STILL_PROCESSING_ERROR_CODE,
    parse_mpesa_timestamp, status_for_result_code,
)
from mpesa.tests.samples import b2c_result, c2b_confirmation, stk_callback


class ResultCodeTestCase(SimpleTestCase):

    def test_mapping(self):
        self.assertEqual(status_for_result_code(0), ExternalTransaction.Status.COMPLETED)
        self.assertEqual(status_for_result_code('1032'), ExternalTransaction.Status.CANCELLED)
        self.assertEqual(status_for_result_code(1), ExternalTransaction.Status.FAILED)
        self.assertEqual(status_for_result_code(2001), ExternalTransaction.Status.FAILED)
        self.assertIsNone(status_for_result_code(None))

    def test_timestamp_is_nairobi_time(self):
        parsed = parse_mpesa_timestamp(20240131143055)

        self.assertEqual(parsed.astimezone(dt_timezone.utc), datetime(2024, 1, 31, 11, 30, 55, tzinfo=dt_timezone.utc))
        self.assertIsNone(parse_mpesa_timestamp('garbage'))
        self.assertIsNone(parse_mpesa_timestamp(None))


class PushResultTestCase(SimpleTestCase):

    def test_success_callback(self):
        result = PushResult.from_callback(stk_callback('ws_CO_1'))

        self.assertTrue(result.is_success)
        self.assertEqual(result.checkout_request_id, 'ws_CO_1')
        self.assertEqual(result.amount, Decimal('5000.00'))
        self.assertEqual(result.receipt_number, 'QKL1234ABC')
        self.assertEqual(result.phone_number, '254708374149')

    def test_cancelled_callback_has_no_metadata(self):
        result = PushResult.from_callback(stk_callback('ws_CO_2', result_code=1032))

        self.assertFalse(result.is_success)
        self.assertEqual(result.result_code, 1032)
        self.assertIsNone(result.amount)
        self.assertEqual(result.receipt_number, '')

    def test_malformed_callback(self):
        with self.assertRaises(ValidationError):
            PushResult.from_callback({'Body': {}})

    def test_query_still_processing(self):
        result = PushResult.from_query('ws_CO_3', {
            'requestId': '1', 'errorCode': STILL_PROCESSING_ERROR_CODE,
            'errorMessage': 'The transaction is being processed'})

        self.assertIsNone(result.result_code)
        self.assertEqual(result.checkout_request_id, 'ws_CO_3')

    def test_query_answer(self):
        result = PushResult.from_query('ws_CO_4', {'ResultCode': '1', 'ResultDesc': 'Insufficient balance'})

        self.assertEqual(result.result_code, 1)


class InboundDepositTestCase(SimpleTestCase):

    def test_confirmation(self):
        deposit = InboundDeposit.from_confirmation(c2b_confirmation('RKT1', ' ACC-001 '))

        self.assertEqual(deposit.transaction_id, 'RKT1')
        self.assertEqual(deposit.amount, Decimal('3000.00'))
        self.assertEqual(deposit.account_reference, 'ACC-001')
        self.assertEqual(deposit.business_short_code, '600100')
        self.assertEqual(deposit.payer_name, 'Jane Doe')

    def test_missing_amount(self):
        payload = c2b_confirmation('RKT2', 'ACC-001')
        del payload['TransAmount']

        with self.assertRaises(ValidationError):
            InboundDeposit.from_confirmation(payload)

    def test_bad_amount(self):
        with self.assertRaises(ValidationError):
            InboundDeposit.from_confirmation(c2b_confirmation('RKT3', 'ACC-001', amount='lots'))


class DisbursementResultTestCase(SimpleTestCase):

    def test_success_result(self):
        result = DisbursementResult.from_result(b2c_result('abc123'))

        self.assertTrue(result.is_success)
        self.assertEqual(result.originator_conversation_id, 'abc123')
        self.assertEqual(result.transaction_id, 'NLJ41HAY6Q')
        self.assertEqual(result.amount, Decimal('3000.00'))
        self.assertEqual(result.occasion, '')

    def test_status_query_result_carries_occasion(self):
        result = DisbursementResult.from_result(b2c_result('other-id', occasion='abc123'))

        self.assertEqual(result.occasion, 'abc123')

    def test_timeout(self):
        result = DisbursementResult.from_timeout({'Result': {'OriginatorConversationID': 'abc123'}})

        self.assertIsNone(result.result_code)

    def test_timeout_without_id(self):
        with self.assertRaises(ValidationError):
            DisbursementResult.from_timeout({})
