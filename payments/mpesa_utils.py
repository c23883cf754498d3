import base64
import datetime
import logging
import re
from dataclasses import dataclass
from decimal import Decimal

import requests
from requests.auth import HTTPBasicAuth
from django.conf import settings
from django.core.cache import cache

from .exceptions import MpesaGatewayError

logger = logging.getLogger(__name__)

BASE_URLS = {
    'sandbox': 'https://sandbox.safaricom.co.ke',
    'production': 'https://api.safaricom.co.ke',
}

RECEIPT_PATTERN = re.compile(r'^[A-Z]{2}[A-Z0-9]{6,18}$')


@dataclass(frozen=True)
class MpesaConfig:
    """
    Daraja credentials and payment-flow tuning, passed explicitly to every
    component instead of reaching for django.conf.settings deep inside them.
    """
    consumer_key: str
    consumer_secret: str
    short_code: str
    pass_key: str
    callback_url: str
    timeout_url: str = ''
    environment: str = 'sandbox'
    http_timeout: int = 30
    max_stk_attempts: int = 3
    query_cooldown: int = 30
    retry_cooldown: int = 120
    client_timeout: int = 40
    receipt_verifier: str = None

    @classmethod
    def from_settings(cls):
        return cls(
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            short_code=str(settings.MPESA_SHORTCODE),
            pass_key=settings.MPESA_PASSKEY,
            callback_url=settings.MPESA_CALLBACK_URL,
            timeout_url=getattr(settings, 'MPESA_TIMEOUT_URL', ''),
            environment=settings.MPESA_ENVIRONMENT,
            http_timeout=settings.MPESA_HTTP_TIMEOUT,
            max_stk_attempts=settings.MPESA_MAX_STK_ATTEMPTS,
            query_cooldown=settings.MPESA_QUERY_COOLDOWN,
            retry_cooldown=settings.MPESA_RETRY_COOLDOWN,
            client_timeout=settings.MPESA_CLIENT_TIMEOUT,
            receipt_verifier=getattr(settings, 'MPESA_RECEIPT_VERIFIER', None),
        )

    @property
    def base_url(self):
        return BASE_URLS.get(self.environment, BASE_URLS['sandbox'])


def get_mpesa_access_token(config):
    """
    Returns a valid access token from Safaricom Daraja.
    Caches it for just under an hour to avoid re-generating unnecessarily.
    """
    cache_key = f'mpesa_access_token:{config.environment}:{config.consumer_key}'
    token = cache.get(cache_key)
    if token:
        return token

    api_url = f"{config.base_url}/oauth/v1/generate?grant_type=client_credentials"
    try:
        r = requests.get(
            api_url,
            auth=HTTPBasicAuth(config.consumer_key, config.consumer_secret),
            timeout=config.http_timeout,
        )
    except requests.exceptions.RequestException as e:
        raise MpesaGatewayError(f"Network error while fetching access token: {e}") from e

    if r.status_code != 200:
        logger.error("M-Pesa token generation failed: %s %s", r.status_code, r.text)
        raise MpesaGatewayError("Failed to generate M-Pesa access token")

    token = r.json().get('access_token')
    if not token:
        raise MpesaGatewayError("Failed to generate M-Pesa access token")
    # Tokens live for 3600 seconds
    cache.set(cache_key, token, timeout=3500)
    return token


def generate_password(short_code, pass_key, now=None):
    """
    Generate the M-Pesa password by concatenating ShortCode + PassKey + Timestamp,
    then base64-encoding the result.

    Returns:
        (password, timestamp) as a tuple
    """
    timestamp = (now or datetime.datetime.now()).strftime('%Y%m%d%H%M%S')
    data_to_encode = short_code + pass_key + timestamp
    encoded_string = base64.b64encode(data_to_encode.encode()).decode('utf-8')
    return encoded_string, timestamp


def format_phone_number(phone_number):
    """
    Normalise a Kenyan mobile number to 254XXXXXXXXX.
    Returns None when the number cannot be normalised.
    """
    phone = ''.join(filter(str.isdigit, str(phone_number or '')))

    if phone.startswith('254') and len(phone) == 12:
        return phone
    if phone.startswith('0') and len(phone) == 10:
        return '254' + phone[1:]
    if phone[:1] in ('7', '1') and len(phone) == 9:
        return '254' + phone
    return None


def normalize_receipt(receipt_number):
    return (receipt_number or '').strip().upper()


def is_valid_receipt_format(receipt_number):
    # Two letters followed by alphanumerics, 8-20 chars in total (e.g. SH12ABC34)
    return bool(RECEIPT_PATTERN.match(receipt_number or ''))


def extract_callback_metadata(items):
    """
    Flatten the CallbackMetadata.Item list into a dict of the fields we keep.
    """
    metadata = {}
    for item in items or []:
        if not isinstance(item, dict):
            continue
        name = item.get('Name')
        value = item.get('Value')
        if name == 'MpesaReceiptNumber':
            metadata['mpesa_receipt_number'] = value
        elif name == 'TransactionDate':
            metadata['transaction_date'] = value
        elif name == 'PhoneNumber':
            metadata['phone_number'] = value
        elif name == 'Amount':
            metadata['amount'] = value
    return metadata


def _post(config, path, payload):
    access_token = get_mpesa_access_token(config)
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json"
    }
    try:
        response = requests.post(
            f"{config.base_url}{path}", json=payload, headers=headers, timeout=config.http_timeout
        )
    except requests.exceptions.RequestException as e:
        raise MpesaGatewayError(f"Network error: {e}") from e

    try:
        response_json = response.json()
    except ValueError as e:
        raise MpesaGatewayError(
            f"Unexpected response from M-Pesa ({response.status_code})"
        ) from e
    return response.status_code, response_json


def send_stk_push(config, phone_number, amount, account_reference, description):
    """
    Sends the STK push prompt to the customer's phone.

    Returns (http_status, response_json). Raises MpesaGatewayError when the
    gateway cannot be reached at all.
    """
    password, timestamp = generate_password(config.short_code, config.pass_key)
    payload = {
        "BusinessShortCode": config.short_code,
        "Password": password,
        "Timestamp": timestamp,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": int(Decimal(str(amount))),  # M-Pesa only takes whole shillings
        "PartyA": phone_number,
        "PartyB": config.short_code,
        "PhoneNumber": phone_number,
        "CallBackURL": config.callback_url,
        "AccountReference": account_reference,
        "TransactionDesc": (description or 'Campaign Payment')[:100],
    }
    return _post(config, '/mpesa/stkpush/v1/processrequest', payload)


def query_stk_status(config, checkout_request_id):
    """
    Asks Daraja what happened to a previous STK push.

    Returns (http_status, response_json). A push that is still waiting on the
    customer comes back as a non-200 with an errorCode, not as an exception.
    """
    password, timestamp = generate_password(config.short_code, config.pass_key)
    payload = {
        "BusinessShortCode": config.short_code,
        "Password": password,
        "Timestamp": timestamp,
        "CheckoutRequestID": checkout_request_id,
    }
    return _post(config, '/mpesa/stkpushquery/v1/query', payload)
