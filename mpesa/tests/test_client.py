from unittest import mock

import requests
from django.core.cache import cache
from django.test import SimpleTestCase, override_settings

from finance.exceptions import ExternalServiceError
from mpesa.client import DarajaClient


def fake_response(status_code=200, data=None):
    response = mock.Mock(status_code=status_code, ok=status_code < 400, text=str(data))
    response.json.return_value = data if data is not None else {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f'{status_code} error')
    return response


TOKEN = fake_response(data={'access_token': 'tok-123', 'expires_in': '3599'})


@override_settings(
    MPESA_CONSUMER_KEY='key',
    MPESA_CONSUMER_SECRET='secret',
    MPESA_SHORTCODE='174379',
    MPESA_PASSKEY='passkey',
    MPESA_ENVIRONMENT='sandbox',
    MPESA_CALLBACK_BASE_URL='https://ledger.example.com/',
)
class DarajaClientTestCase(SimpleTestCase):

    def setUp(self):
        cache.clear()
        self.addCleanup(cache.clear)

        get_patcher = mock.patch('mpesa.client.requests.get')
        post_patcher = mock.patch('mpesa.client.requests.post')
        sleep_patcher = mock.patch('mpesa.client.time.sleep')
        self.get = get_patcher.start()
        self.post = post_patcher.start()
        self.sleep = sleep_patcher.start()
        self.addCleanup(mock.patch.stopall)

        self.get.return_value = TOKEN
        self.daraja = DarajaClient()

    def test_token_is_cached(self):
        self.assertEqual(self.daraja.get_access_token(), 'tok-123')
        self.assertEqual(DarajaClient().get_access_token(), 'tok-123')

        self.assertEqual(self.get.call_count, 1)
        self.assertIn('sandbox.safaricom.co.ke', self.get.call_args[0][0])

    def test_token_retries_server_errors(self):
        self.get.side_effect = [fake_response(503), requests.ConnectionError('reset'), TOKEN]

        self.assertEqual(self.daraja.get_access_token(), 'tok-123')
        self.assertEqual(self.get.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_token_gives_up_after_retries(self):
        self.get.side_effect = requests.ConnectionError('down')

        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.get_access_token()

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.get.call_count, DarajaClient.MAX_TOKEN_ATTEMPTS)

    def test_bad_credentials_are_not_retried(self):
        self.get.return_value = fake_response(401, {'errorMessage': 'Invalid credentials'})

        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.get_access_token()

        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.get.call_count, 1)

    @override_settings(MPESA_CONSUMER_KEY='', MPESA_CONSUMER_SECRET='')
    def test_missing_credentials(self):
        with self.assertRaises(ExternalServiceError) as ctx:
            DarajaClient().get_access_token()

        self.assertFalse(ctx.exception.retryable)
        self.get.assert_not_called()

    def test_stk_push_request(self):
        self.post.return_value = fake_response(data={'CheckoutRequestID': 'ws_CO_1', 'ResponseCode': '0'})

        data = self.daraja.stk_push('0708374149', '1500.00', 'ACC-0001-LONGER')

        self.assertEqual(data['CheckoutRequestID'], 'ws_CO_1')
        url = self.post.call_args[0][0]
        payload = self.post.call_args[1]['json']
        self.assertTrue(url.endswith('/mpesa/stkpush/v1/processrequest'))
        self.assertEqual(payload['PhoneNumber'], '254708374149')
        self.assertEqual(payload['Amount'], 1500)
        self.assertEqual(payload['AccountReference'], 'ACC-0001-LON')
        self.assertEqual(payload['CallBackURL'], 'https://ledger.example.com/api/mpesa/stkpush/callback/')
        self.assertEqual(self.post.call_args[1]['headers'], {'Authorization': 'Bearer tok-123'})

    def test_stk_push_not_accepted(self):
        self.post.return_value = fake_response(data={'ResponseCode': '1', 'ResponseDescription': 'Rejected'})

        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.stk_push('0708374149', 10, 'ACC')

        self.assertFalse(ctx.exception.retryable)

    def test_payment_requests_are_never_resent(self):
        self.post.side_effect = requests.Timeout('read timed out')

        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.stk_push('0708374149', 10, 'ACC')

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.post.call_count, 1)

    def test_server_error_is_retryable_and_client_error_is_not(self):
        self.post.return_value = fake_response(502)
        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.b2c_payment('0708374149', 3000, 'abc')
        self.assertTrue(ctx.exception.retryable)

        self.post.return_value = fake_response(400, {'errorMessage': 'Invalid Access Token'})
        with self.assertRaises(ExternalServiceError) as ctx:
            self.daraja.b2c_payment('0708374149', 3000, 'abc')
        self.assertFalse(ctx.exception.retryable)

    def test_stk_query_passes_through_error_body(self):
        answer = {'errorCode': '500.001.1001', 'errorMessage': 'The transaction is being processed'}
        self.post.return_value = fake_response(500, answer)

        self.assertEqual(self.daraja.stk_query('ws_CO_1'), answer)

    def test_transaction_status_uses_conversation_id_as_occasion(self):
        self.post.return_value = fake_response(data={'ResponseCode': '0'})

        self.daraja.transaction_status('abc123')

        payload = self.post.call_args[1]['json']
        self.assertEqual(payload['OriginalConversationID'], 'abc123')
        self.assertEqual(payload['Occasion'], 'abc123')
        self.assertEqual(payload['ResultURL'], 'https://ledger.example.com/api/mpesa/b2c/result/')
