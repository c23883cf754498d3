"""Tests for the Daraja client helpers."""

import base64
import datetime
from unittest.mock import MagicMock, patch

import pytest
import requests
from django.core.cache import cache

from payments import mpesa_utils
from payments.exceptions import MpesaGatewayError


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()


def _response(status_code=200, json_data=None, json_error=None):
    response = MagicMock(status_code=status_code, text='body')
    if json_error:
        response.json.side_effect = json_error
    else:
        response.json.return_value = json_data or {}
    return response


class TestFormatPhoneNumber:

    @pytest.mark.parametrize('raw, expected', [
        ('254712345678', '254712345678'),
        ('0712345678', '254712345678'),
        ('712345678', '254712345678'),
        ('+254 712 345 678', '254712345678'),
        ('0112345678', '254112345678'),
    ])
    def test_normalises_kenyan_numbers(self, raw, expected):
        assert mpesa_utils.format_phone_number(raw) == expected

    @pytest.mark.parametrize('raw', ['', None, '12345', '25471234567', '07123456789', 'abc'])
    def test_rejects_unusable_numbers(self, raw):
        assert mpesa_utils.format_phone_number(raw) is None


class TestReceipts:

    def test_normalize_strips_and_uppercases(self):
        assert mpesa_utils.normalize_receipt('  sh99zzz11 ') == 'SH99ZZZ11'

    @pytest.mark.parametrize('receipt', ['SH99ZZZ11', 'ABC123XYZ', 'QK12345678ABCDEFGH'])
    def test_valid_formats(self, receipt):
        assert mpesa_utils.is_valid_receipt_format(receipt)

    @pytest.mark.parametrize('receipt', ['', 'S1234567', 'SH123', '12ABCDEFG', 'SH12-ABC34', 'sh99zzz11'])
    def test_invalid_formats(self, receipt):
        assert not mpesa_utils.is_valid_receipt_format(receipt)


class TestGeneratePassword:

    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        password, timestamp = mpesa_utils.generate_password(
            '174379', 'passkey', now=datetime.datetime(2025, 12, 19, 10, 21, 15)
        )

        assert timestamp == '20251219102115'
        assert base64.b64decode(password).decode() == '174379passkey20251219102115'


class TestExtractCallbackMetadata:

    def test_flattens_known_items(self):
        items = [
            {'Name': 'Amount', 'Value': 5000},
            {'Name': 'MpesaReceiptNumber', 'Value': 'ABC123XYZ'},
            {'Name': 'Balance'},
            {'Name': 'TransactionDate', 'Value': 20251219102115},
            {'Name': 'PhoneNumber', 'Value': 254712345678},
        ]

        assert mpesa_utils.extract_callback_metadata(items) == {
            'amount': 5000,
            'mpesa_receipt_number': 'ABC123XYZ',
            'transaction_date': 20251219102115,
            'phone_number': 254712345678,
        }

    def test_tolerates_garbage(self):
        assert mpesa_utils.extract_callback_metadata(None) == {}
        assert mpesa_utils.extract_callback_metadata(['junk', 3]) == {}


class TestAccessToken:

    @patch('payments.mpesa_utils.requests.get')
    def test_token_is_cached(self, mock_get, config):
        mock_get.return_value = _response(json_data={'access_token': 'tok-1', 'expires_in': '3599'})

        assert mpesa_utils.get_mpesa_access_token(config) == 'tok-1'
        assert mpesa_utils.get_mpesa_access_token(config) == 'tok-1'
        assert mock_get.call_count == 1
        assert mock_get.call_args[0][0] == (
            'https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials'
        )

    @patch('payments.mpesa_utils.requests.get')
    def test_rejected_credentials_raise(self, mock_get, config):
        mock_get.return_value = _response(status_code=400)

        with pytest.raises(MpesaGatewayError):
            mpesa_utils.get_mpesa_access_token(config)

    @patch('payments.mpesa_utils.requests.get')
    def test_network_error_raises(self, mock_get, config):
        mock_get.side_effect = requests.exceptions.ConnectionError('down')

        with pytest.raises(MpesaGatewayError):
            mpesa_utils.get_mpesa_access_token(config)


@patch('payments.mpesa_utils.get_mpesa_access_token', return_value='tok-1')
class TestDarajaCalls:

    @patch('payments.mpesa_utils.requests.post')
    def test_send_stk_push_payload(self, mock_post, mock_token, config):
        mock_post.return_value = _response(json_data={'ResponseCode': '0', 'CheckoutRequestID': 'ws_CO_0001'})

        status_code, body = mpesa_utils.send_stk_push(
            config, '254712345678', '5000.00', '254712345678', 'Campaign Payment'
        )

        assert status_code == 200
        assert body['CheckoutRequestID'] == 'ws_CO_0001'
        url = mock_post.call_args[0][0]
        payload = mock_post.call_args[1]['json']
        assert url == 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest'
        assert payload['TransactionType'] == 'CustomerPayBillOnline'
        assert payload['Amount'] == 5000
        assert payload['PartyA'] == payload['PhoneNumber'] == '254712345678'
        assert payload['PartyB'] == payload['BusinessShortCode'] == '174379'
        assert payload['CallBackURL'] == config.callback_url
        assert mock_post.call_args[1]['headers']['Authorization'] == 'Bearer tok-1'

    @patch('payments.mpesa_utils.requests.post')
    def test_query_uses_query_endpoint(self, mock_post, mock_token, config):
        mock_post.return_value = _response(status_code=500, json_data={'errorCode': '500.001.1001'})

        status_code, body = mpesa_utils.query_stk_status(config, 'ws_CO_0001')

        assert status_code == 500
        assert body == {'errorCode': '500.001.1001'}
        assert mock_post.call_args[0][0].endswith('/mpesa/stkpushquery/v1/query')
        assert mock_post.call_args[1]['json']['CheckoutRequestID'] == 'ws_CO_0001'

    @patch('payments.mpesa_utils.requests.post')
    def test_network_error_raises(self, mock_post, mock_token, config):
        mock_post.side_effect = requests.exceptions.Timeout('slow')

        with pytest.raises(MpesaGatewayError):
            mpesa_utils.send_stk_push(config, '254712345678', 5000, '254712345678', None)

    @patch('payments.mpesa_utils.requests.post')
    def test_non_json_response_raises(self, mock_post, mock_token, config):
        mock_post.return_value = _response(status_code=502, json_error=ValueError('no json'))

        with pytest.raises(MpesaGatewayError):
            mpesa_utils.query_stk_status(config, 'ws_CO_0001')
