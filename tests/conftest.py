from decimal import Decimal
from unittest.mock import patch

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from campaigns.models import Advertiser, Campaign
from payments.models import Payment
from payments.mpesa_utils import MpesaConfig

AMOUNT = Decimal('5000.00')


@pytest.fixture
def config():
    return MpesaConfig(
        consumer_key='key',
        consumer_secret='secret',
        short_code='174379',
        pass_key='passkey',
        callback_url='https://example.com/api/payment-callback/',
    )


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(username='acme', password='secret')


@pytest.fixture
def advertiser(user):
    return Advertiser.objects.create(user=user, company_name='Acme Ltd', phone_number='254712345678', status='approved')


@pytest.fixture
def campaign(advertiser):
    return Campaign.objects.create(
        advertiser=advertiser, name='Launch', helmet_count=50, duration_days=30, status='pending_payment'
    )


@pytest.fixture
def admin_user(db):
    return get_user_model().objects.create_superuser(username='admin', password='secret', email='admin@example.com')


@pytest.fixture
def api_client(user, advertiser):
    client = APIClient()
    client.force_authenticate(user)
    return client


def make_payment(advertiser, **fields):
    defaults = {
        'payment_reference': f"PAY-5678-{Payment.objects.count():08d}",
        'amount': AMOUNT,
        'phone_number': '254712345678',
        'paybill_account_number': '254712345678',
        'payment_gateway': 'safaricom_mpesa',
        'status': 'pending',
    }
    defaults.update(fields)
    return Payment.objects.create(advertiser=advertiser, **defaults)


@pytest.fixture
def payment(advertiser, campaign):
    """A pending STK push that is waiting on its callback."""
    return make_payment(
        advertiser,
        campaign=campaign,
        gateway_reference='29115-34620561-1',
        gateway_transaction_id='ws_CO_0001',
        stk_push_attempts=1,
        last_stk_push_at=timezone.now(),
    )


@pytest.fixture
def notifier():
    with patch('payments.services.notify_payment_status') as mock:
        yield mock


@pytest.fixture
def stk_push():
    with patch('payments.mpesa_utils.send_stk_push') as mock:
        mock.return_value = stk_accepted()
        yield mock


@pytest.fixture
def stk_query():
    with patch('payments.mpesa_utils.query_stk_status') as mock:
        yield mock


def stk_accepted(checkout_request_id='ws_CO_0001'):
    return 200, {
        'MerchantRequestID': '29115-34620561-1',
        'CheckoutRequestID': checkout_request_id,
        'ResponseCode': '0',
        'ResponseDescription': 'Success. Request accepted for processing',
        'CustomerMessage': 'Success. Request accepted for processing',
    }


def callback_body(checkout_request_id='ws_CO_0001', result_code=0, receipt='ABC123XYZ',
                  result_desc='The service request is processed successfully.'):
    stk_callback = {
        'MerchantRequestID': '29115-34620561-1',
        'CheckoutRequestID': checkout_request_id,
        'ResultCode': result_code,
        'ResultDesc': result_desc,
    }
    if result_code == 0:
        stk_callback['CallbackMetadata'] = {
            'Item': [
                {'Name': 'Amount', 'Value': 5000},
                {'Name': 'MpesaReceiptNumber', 'Value': receipt},
                {'Name': 'TransactionDate', 'Value': 20251219102115},
                {'Name': 'PhoneNumber', 'Value': 254712345678},
            ]
        }
    return {'Body': {'stkCallback': stk_callback}}
